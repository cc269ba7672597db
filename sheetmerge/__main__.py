#!/usr/bin/env python3
"""
SheetMerge CLI

Command-line interface for the SheetMerge engine.

Usage:
    python -m sheetmerge run --table-id <id> [--config <path>]
    python -m sheetmerge group --records <json> --field <name>
    python -m sheetmerge columns --template <path>
    python -m sheetmerge merge (--records <json> | --records-csv <path>) --template <path> --template-id <id>

All commands output JSON to stdout; logs go to stderr.
"""

import argparse
import json
import logging
import sys
import tempfile
from pathlib import Path
from typing import Any

from sheetmerge.errors import MergeError


def output_json(data: Any, success: bool = True) -> None:
    """Output JSON response to stdout."""
    response = {
        "success": success,
        "data": data if success else None,
        "error": None if success else data,
    }
    print(json.dumps(response, indent=2, ensure_ascii=False, default=str))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def cmd_run(args: argparse.Namespace) -> None:
    """Run a full merge job for one source table."""
    from sheetmerge.config import load_config
    from sheetmerge.job import run_job

    try:
        config = load_config(args.config)
        result = run_job({"tableId": args.table_id}, config)
        output_json(result.to_dict(), success=result.ok)
    except MergeError as e:
        output_json(str(e), success=False)


def cmd_group(args: argparse.Namespace) -> None:
    """Group records by template id."""
    from sheetmerge.grouping import group_records

    try:
        records = json.loads(args.records)
        groups = group_records(records, args.field)
        output_json({"groups": groups, "count": len(groups)})
    except (ValueError, AttributeError) as e:
        output_json(str(e), success=False)


def cmd_columns(args: argparse.Namespace) -> None:
    """Print the column model of a local template."""
    from openpyxl import load_workbook
    from sheetmerge.columns import derive_columns, read_header_row

    try:
        workbook = load_workbook(args.template)
        columns = derive_columns(read_header_row(workbook.worksheets[0]))
        output_json({"columns": [{"header": c.header, "key": c.key} for c in columns]})
    except Exception as e:
        output_json(str(e), success=False)


def cmd_merge(args: argparse.Namespace) -> None:
    """Merge local records into a local template."""
    from sheetmerge.data_sources import load_records_csv
    from sheetmerge.merger import TemplateArtifact, merge_group
    from sheetmerge.results import aggregate

    try:
        if args.records_csv:
            records, _ = load_records_csv(args.records_csv)
        else:
            records = json.loads(args.records)

        template = Path(args.template)
        artifact = TemplateArtifact(content=template.read_bytes(), file_name=template.name)
        path = merge_group(records, artifact, args.template_id, scratch_root=args.scratch_root)
        output_json(aggregate(args.template_id, path, records).to_dict())
    except (MergeError, OSError, ValueError) as e:
        output_json(str(e), success=False)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="sheetmerge",
        description="SheetMerge CLI - merge records into spreadsheet templates",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the merge job for a source table")
    p_run.add_argument("--table-id", required=True, help="Source table id")
    p_run.add_argument("--config", help="Path to config JSON (defaults to the user data dir)")
    p_run.set_defaults(func=cmd_run)

    # group
    p_group = subparsers.add_parser("group", help="Group records by template id")
    p_group.add_argument("--records", required=True, help="JSON array of records")
    p_group.add_argument("--field", required=True, help="Template id field name")
    p_group.set_defaults(func=cmd_group)

    # columns
    p_cols = subparsers.add_parser("columns", help="Show a template's column model")
    p_cols.add_argument("--template", required=True, help="Path to .xlsx template")
    p_cols.set_defaults(func=cmd_columns)

    # merge
    p_merge = subparsers.add_parser("merge", help="Merge records into a local template")
    source = p_merge.add_mutually_exclusive_group(required=True)
    source.add_argument("--records", help="JSON array of records")
    source.add_argument("--records-csv", help="CSV file of records")
    p_merge.add_argument("--template", required=True, help="Path to .xlsx template")
    p_merge.add_argument("--template-id", required=True, help="Template id (output subdirectory)")
    p_merge.add_argument("--scratch-root", default=tempfile.gettempdir(), help="Output root directory")
    p_merge.set_defaults(func=cmd_merge)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
