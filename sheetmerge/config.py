# sheetmerge/config.py

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from appdirs import user_data_dir

from sheetmerge.errors import ConfigurationError
from sheetmerge.grouping import canonical_id


logger = logging.getLogger(__name__)

APP_NAME = "SheetMerge"
APP_AUTHOR = "SheetMerge"

# Default config location: platform-appropriate user data directory
CONFIG_FILE = os.path.join(user_data_dir(APP_NAME, APP_AUTHOR), "config.json")

ENV_PREFIX = "SHEETMERGE_"

TABLE_MERGE = "MERGE"
TABLE_TEMPLATE = "TEMPLATE"


@dataclass(frozen=True)
class AccountConfig:
    api_key: str = ""
    host: str = "go.trackvia.com"
    access_token: str = ""
    username: str = ""
    password: str = ""

    def has_valid_access_token(self) -> bool:
        token = self.access_token
        return isinstance(token, str) and len(token) > 20


@dataclass(frozen=True)
class SourceTablesConfig:
    template_relationship_field_name: str = ""
    template_relationship_field_name_id: str = ""
    table_ids_to_view_ids: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TemplateTableConfig:
    view_id: Any = None
    field_name_for_template_document: str = ""


@dataclass(frozen=True)
class MergedDocTableConfig:
    view_id: Any = None
    merged_doc_details_field_name: str = ""
    merged_doc_to_template_relationship_field_name: str = ""
    merge_user_field_name: str = ""
    merged_document_field_name: str = ""


@dataclass(frozen=True)
class MergeConfig:
    account: AccountConfig = field(default_factory=AccountConfig)
    source_tables: SourceTablesConfig = field(default_factory=SourceTablesConfig)
    template_table: TemplateTableConfig = field(default_factory=TemplateTableConfig)
    merged_doc_table: MergedDocTableConfig = field(default_factory=MergedDocTableConfig)
    scratch_root: str = field(default_factory=tempfile.gettempdir)

    def view_for_table(self, table_id) -> str:
        """View holding the records to merge for a source table."""
        key = canonical_id(table_id)
        views = self.source_tables.table_ids_to_view_ids
        if key not in views:
            message = f"There's no entry in our map for table: {key}"
            logger.error(message)
            raise ConfigurationError(message)
        return views[key]

    def export_fields(self) -> Dict[str, Dict[str, str]]:
        """Configured field names per target table, for diagnostics."""
        merged = self.merged_doc_table
        return {
            TABLE_MERGE: {
                "merged_doc_details_field_name": merged.merged_doc_details_field_name,
                "merged_doc_to_template_relationship_field_name": merged.merged_doc_to_template_relationship_field_name,
                "merge_user_field_name": merged.merge_user_field_name,
                "merged_document_field_name": merged.merged_document_field_name,
            },
            TABLE_TEMPLATE: {
                "field_name_for_template_document": self.template_table.field_name_for_template_document,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergeConfig":
        source = dict(data.get("source_tables") or {})
        source["table_ids_to_view_ids"] = {
            canonical_id(k): canonical_id(v)
            for k, v in (source.get("table_ids_to_view_ids") or {}).items()
        }
        try:
            return cls(
                account=AccountConfig(**(data.get("account") or {})),
                source_tables=SourceTablesConfig(**source),
                template_table=TemplateTableConfig(**(data.get("template_table") or {})),
                merged_doc_table=MergedDocTableConfig(**(data.get("merged_doc_table") or {})),
                scratch_root=data.get("scratch_root") or tempfile.gettempdir(),
            )
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}") from e


# -------------------------------------------------
# Loading
# -------------------------------------------------

def _apply_env(data: Dict[str, Any], environ) -> Dict[str, Any]:
    account = dict(data.get("account") or {})
    for key in ("api_key", "access_token", "username", "password", "host"):
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value:
            account[key] = value
    data = {**data, "account": account}

    scratch_root = environ.get(f"{ENV_PREFIX}SCRATCH_ROOT")
    if scratch_root:
        data["scratch_root"] = scratch_root
    return data


def load_config(path: Optional[str] = None, environ=None) -> MergeConfig:
    """
    Load the JSON config file and apply SHEETMERGE_* environment overrides.

    Credentials are usually supplied through the environment rather than
    written to the file.
    """
    path = path or CONFIG_FILE
    environ = os.environ if environ is None else environ

    if not os.path.exists(path):
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must hold a JSON object")

    return MergeConfig.from_dict(_apply_env(data, environ))


def check_view_id(view_id) -> bool:
    """View ids must be numeric and greater than 0."""
    try:
        ok = int(str(view_id)) > 0
    except (TypeError, ValueError):
        ok = False
    if not ok:
        logger.error(f"Please ensure template view ids are numeric and greater than 0 (got {view_id!r})")
    return ok
