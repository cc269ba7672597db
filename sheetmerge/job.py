# sheetmerge/job.py

import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sheetmerge.config import TABLE_MERGE, TABLE_TEMPLATE, MergeConfig, check_view_id
from sheetmerge.data_sources import DataSourceClient
from sheetmerge.errors import ConfigurationError, UploadError, UpstreamFetchError
from sheetmerge.grouping import canonical_id, group_records
from sheetmerge.images import encode_image
from sheetmerge.merger import TemplateArtifact, merge_all
from sheetmerge.results import RECORD_ID_FIELD, GroupOutcome, JobResult, merged_doc_fields, summarize


logger = logging.getLogger(__name__)

# Internal id of a record, used to address it through the API
ID_FIELD = "id"

MAX_RECORDS = 1000


# ============================================================
# helpers
# ============================================================

def _log_upstream_error(e: UpstreamFetchError) -> None:
    logger.error(f"{e} {e.details()}")


def authenticate(client: DataSourceClient, config: MergeConfig) -> None:
    """Use the configured access token when it looks real, else log in."""
    account = config.account
    if account.has_valid_access_token():
        logger.info("Access token seems valid, using that to authorize")
        client.set_access_token(account.access_token)
        return

    logger.info("Access token does not seem valid, using username and password")
    client.login(account.username, account.password)


def fetch_records(client: DataSourceClient, view_id) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Records of a view with their image fields filled in.

    Every image-typed field gets a base64 data URL, or "" when the record
    has no image there or the download fails. Downloads run one at a time
    because the API answers 404 for empty fields.

    Returns:
        records: new record dicts (the page data is left untouched)
        structure: the view's field structure
    """
    page = client.get_view(view_id, start=0, max_records=MAX_RECORDS)
    image_fields = page.fields_of_type("image")

    records = []
    for source in page.records:
        record = dict(source)
        record_id = record.get(RECORD_ID_FIELD, record.get(ID_FIELD))
        for name in image_fields:
            record[name] = _fetch_image(client, view_id, record_id, name)
        records.append(record)

    logger.info(f"Records found in view: {len(records)}")
    if page.total_count > len(records):
        logger.warning(f"View {view_id} holds {page.total_count} records; only the first {len(records)} are merged")
    return records, page.structure


def _fetch_image(client: DataSourceClient, view_id, record_id, field_name: str) -> str:
    try:
        download = client.get_file(view_id, record_id, field_name)
    except UpstreamFetchError as e:
        logger.warning(f"Could not fetch image {field_name!r} of record {record_id}: {e}")
        return ""
    if download is None or not download.content:
        return ""
    return encode_image(download.content, download.extension or "png")


def reset_template_relationship(
    client: DataSourceClient,
    view_id,
    records: Iterable[Mapping[str, Any]],
    config: MergeConfig,
) -> bool:
    """
    Clear the template relationship on every source record.

    Failures are logged and do not stop the job. Returns True when every
    record was reset.
    """
    field_name = config.source_tables.template_relationship_field_name
    ok = True

    for record in records:
        try:
            client.update_record(view_id, record.get(ID_FIELD), {field_name: None})
        except UpstreamFetchError as e:
            logger.debug(f"Reset failed for record {record.get(ID_FIELD)}: {e}")
            ok = False

    if ok:
        logger.info("Reset all source records")
    else:
        logger.error(
            f"Unable to unset relationship to template. Please ensure template relationship "
            f'field name, "{field_name}" matches relationship name on source table EXACTLY, '
            f'and be sure that "{view_id}" is the correct view for sending merge data to templates.'
        )
    return ok


def check_field_names(client: DataSourceClient, table: str, view_id, config: MergeConfig) -> List[str]:
    """
    Explain an upload or template failure.

    Returns one message per configured field name that the view lacks, or a
    single message when the view itself cannot be read.
    """
    try:
        page = client.get_view(view_id)
    except UpstreamFetchError as e:
        if e.status == 401:
            message = f'Could not find {table} view, please check the view id: "{view_id}"'
            logger.error(message)
            return [message]
        _log_upstream_error(e)
        return [str(e)]

    names = page.field_names()
    problems = []
    for setting, value in config.export_fields()[table].items():
        if value and value not in names:
            message = (
                f'Couldn\'t find the field "{value}" in the table "{table}". '
                f'This value is set in the config as the value for "{setting}"'
            )
            logger.error(message)
            problems.append(message)
    return problems


def fetch_templates(
    client: DataSourceClient,
    template_ids: Iterable[str],
    config: MergeConfig,
) -> Tuple[Dict[str, TemplateArtifact], Dict[str, GroupOutcome]]:
    """
    Download the template file of every template id.

    Returns:
        templates: template id -> TemplateArtifact
        failures: template id -> failed GroupOutcome
    """
    table = config.template_table
    templates: Dict[str, TemplateArtifact] = {}
    failures: Dict[str, GroupOutcome] = {}

    for template_id in template_ids:
        template_id = canonical_id(template_id)
        try:
            download = client.get_file(table.view_id, template_id, table.field_name_for_template_document)
            if download is None:
                raise UpstreamFetchError(f"Template {template_id} has no template document", status=404)
        except UpstreamFetchError as e:
            _log_upstream_error(e)
            failures[template_id] = GroupOutcome(
                template_id, "failed", error=str(e), error_type=type(e).__name__
            )
            continue

        logger.info(f"Template file name is {download.file_name}")
        templates[template_id] = TemplateArtifact(content=download.content, file_name=download.file_name)

    if failures:
        check_field_names(client, TABLE_TEMPLATE, table.view_id, config)
    return templates, failures


def upload_artifacts(
    client: DataSourceClient,
    outcomes: Iterable[GroupOutcome],
    config: MergeConfig,
) -> None:
    """
    Create one merged document record per merged group and attach its file.

    Outcomes are updated in place to "uploaded" or "failed".
    """
    table = config.merged_doc_table
    hints: Optional[List[str]] = None

    for outcome in outcomes:
        if outcome.status != "merged" or outcome.artifact is None:
            continue
        artifact = outcome.artifact

        try:
            created = client.add_record(table.view_id, merged_doc_fields(artifact, table))
            client.attach_file(table.view_id, created[ID_FIELD], table.merged_document_field_name, artifact.file_path)
        except (UpstreamFetchError, KeyError, OSError) as e:
            if hints is None:
                hints = check_field_names(client, TABLE_MERGE, table.view_id, config)
            message = f"Upload failed for template {artifact.template_id}: {e}"
            if hints:
                message += " (" + "; ".join(hints) + ")"
            error = UploadError(message, hints)
            logger.error(str(error))
            outcome.status = "failed"
            outcome.error = str(error)
            outcome.error_type = type(error).__name__
            continue

        outcome.status = "uploaded"

    logger.info("done uploading everything")


# ============================================================
# public API
# ============================================================

def run_job(
    event: Optional[Mapping[str, Any]],
    config: MergeConfig,
    client: Optional[DataSourceClient] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> JobResult:
    """
    Merge every pending record of a source table into its template.

    `event` carries the `tableId` of the source table. The returned
    JobResult is the job's only completion signal.
    """
    logger.info("starting")
    check_view_id(config.template_table.view_id)
    check_view_id(config.merged_doc_table.view_id)

    table_id = (event or {}).get("tableId")
    if not table_id:
        logger.error("No table ID. I am out")
        return JobResult("success", "There's no table ID, so I'm done")

    template_field = config.source_tables.template_relationship_field_name_id
    try:
        view_id = config.view_for_table(table_id)
        if not template_field:
            raise ConfigurationError("source_tables.template_relationship_field_name_id is not set")
    except ConfigurationError as e:
        logger.error(str(e))
        return JobResult("failed", str(e))
    logger.info(f"ViewId is: {view_id}")

    if client is None:
        client = DataSourceClient(config.account.api_key, config.account.host)

    try:
        authenticate(client, config)
        records, _ = fetch_records(client, view_id)
    except UpstreamFetchError as e:
        _log_upstream_error(e)
        return JobResult("failed", str(e))

    reset_template_relationship(client, view_id, records, config)

    groups = group_records(records, template_field)
    if not groups:
        return summarize([])

    templates, failures = fetch_templates(client, groups.keys(), config)
    mergeable = {k: v for k, v in groups.items() if k not in failures}
    merged = {
        o.template_id: o
        for o in merge_all(mergeable, templates, scratch_root=config.scratch_root, cancel=cancel)
    }
    outcomes = [failures.get(template_id) or merged[template_id] for template_id in groups]

    upload_artifacts(client, outcomes, config)

    result = summarize(outcomes)
    logger.info(result.message)
    return result
