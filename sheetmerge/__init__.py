"""
SheetMerge - merge data-source records into spreadsheet templates.

This module provides the core functionality for:
- Grouping records by the template they should be merged into
- Deriving a column model from a template's header row
- Decoding inline image fields and embedding them in the output
- Writing one merged .xlsx per template group
- Running the whole job against a TrackVia-style data source

Public API:
-----------
Grouping:
    group_records(records, template_field) -> Dict[str, List[Dict]]

Columns:
    derive_columns(first_row_values) -> List[Column]

Images:
    is_image_field(value) -> bool
    decode_image(value) -> DecodedImage

Merging:
    merge_group(records, artifact, template_id, scratch_root=...) -> str
    aggregate(template_id, file_path, records) -> MergeArtifact

Job:
    run_job(event, config, client=None) -> JobResult

The engine has no UI dependencies and can be used standalone.
"""

from sheetmerge.grouping import canonical_id, group_records
from sheetmerge.columns import Column, derive_columns
from sheetmerge.images import DecodedImage, decode_image, encode_image, is_image_field
from sheetmerge.merger import TemplateArtifact, build_row_view, merge_all, merge_group
from sheetmerge.results import GroupOutcome, JobResult, MergeArtifact, aggregate
from sheetmerge.config import MergeConfig, load_config
from sheetmerge.data_sources import DataSourceClient
from sheetmerge.job import run_job

__all__ = [
    # Grouping
    "canonical_id",
    "group_records",
    # Columns
    "Column",
    "derive_columns",
    # Images
    "DecodedImage",
    "decode_image",
    "encode_image",
    "is_image_field",
    # Merging
    "TemplateArtifact",
    "build_row_view",
    "merge_all",
    "merge_group",
    # Results
    "GroupOutcome",
    "JobResult",
    "MergeArtifact",
    "aggregate",
    # Job
    "DataSourceClient",
    "MergeConfig",
    "load_config",
    "run_job",
]
