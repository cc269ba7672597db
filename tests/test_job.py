from pathlib import Path

from openpyxl import load_workbook

from sheetmerge.config import MergeConfig
from sheetmerge.data_sources import DataSourceClient, FileDownload, ViewPage
from sheetmerge.errors import UpstreamFetchError
from sheetmerge.job import check_field_names, fetch_records, run_job

from conftest import FakeClient, make_png


MERGED_VIEW = ViewPage(
    records=[],
    structure=[
        {"name": "Details", "type": "paragraph"},
        {"name": "Template", "type": "relationship"},
        {"name": "Merged By", "type": "user"},
        {"name": "Merged Document", "type": "document"},
    ],
)
TEMPLATE_VIEW = ViewPage(records=[], structure=[{"name": "Document", "type": "document"}])


def _client(source_page, template_download, **kwargs):
    files = {
        (100, "R-1", "Photo"): FileDownload(make_png(), 'attachment; filename="alice.png"'),
        (100, "R-2", "Photo"): None,
        (200, "7", "Document"): template_download,
    }
    files.update(kwargs.pop("files", {}))
    return FakeClient(
        views={100: source_page, 200: TEMPLATE_VIEW, 300: MERGED_VIEW},
        files=files,
        **kwargs,
    )


def test_full_job(merge_config, source_page, template_download):
    client = _client(source_page, template_download)

    result = run_job({"tableId": 10}, merge_config, client)

    assert result.status == "success"
    assert result.message == "Merge completed successfully"
    assert client.access_token == "t" * 32
    assert [u[1] for u in client.updates] == [1, 2, 3]
    assert all(u[2] == {"Template": None} for u in client.updates)

    assert client.added == [(300, {
        "Details": "Merged 2 records:\nR-1\nR-2",
        "Template": "7",
        "Merged By": "42",
    })]
    view_id, record_id, field_name, path = client.attached[0]
    assert (view_id, record_id, field_name) == (300, 901, "Merged Document")
    assert Path(path).parent.name == "7"
    assert Path(path).name.endswith("_report.xlsx")

    ws = load_workbook(path).worksheets[0]
    assert [c.value for c in ws[1]] == ["Record ID", "Name", "Photo"]
    assert [ws.cell(row=r, column=2).value for r in (2, 3)] == ["Alice", "Bob"]

    (outcome,) = result.outcomes
    assert outcome.status == "uploaded"
    assert outcome.artifact.record_ids == ["R-1", "R-2"]


def test_source_records_are_not_mutated(merge_config, source_page, template_download):
    client = _client(source_page, template_download)

    run_job({"tableId": "10"}, merge_config, client)

    assert all("Photo" not in r for r in source_page.records)


def test_no_table_id(merge_config):
    result = run_job({}, merge_config, FakeClient())

    assert result.ok
    assert result.message == "There's no table ID, so I'm done"


def test_unmapped_table(merge_config):
    client = FakeClient()

    result = run_job({"tableId": 99}, merge_config, client)

    assert result.status == "failed"
    assert "99" in result.message
    assert client.updates == []


def test_login_used_without_valid_token(source_page, template_download, merge_config):
    data = {
        "account": {"api_key": "key", "access_token": "short", "username": "u", "password": "p"},
        "source_tables": {
            "template_relationship_field_name": "Template",
            "template_relationship_field_name_id": "Template(id)",
            "table_ids_to_view_ids": {"10": "100"},
        },
        "template_table": {"view_id": 200, "field_name_for_template_document": "Document"},
        "merged_doc_table": {"view_id": 300, "merged_document_field_name": "Merged Document"},
        "scratch_root": merge_config.scratch_root,
    }
    client = _client(source_page, template_download)

    result = run_job({"tableId": 10}, MergeConfig.from_dict(data), client)

    assert client.logins == [("u", "p")]
    assert result.ok


def test_image_fetch_failure_leaves_empty_value(source_page, template_download):
    client = _client(
        source_page,
        template_download,
        files={(100, "R-1", "Photo"): UpstreamFetchError("boom", status=500)},
    )

    records, _ = fetch_records(client, 100)

    assert [r["Photo"] for r in records] == ["", "", ""]


def test_image_fetch_builds_data_url(source_page, template_download):
    records, structure = fetch_records(_client(source_page, template_download), 100)

    assert records[0]["Photo"].startswith("data:image/png;base64,")
    assert records[1]["Photo"] == ""
    assert structure == source_page.structure


def test_missing_template_fails_only_its_group(merge_config, source_page, template_download):
    source_page.records.append({"id": 4, "Record ID": "R-4", "Template(id)": 8, "Name": "Dana"})
    client = _client(source_page, template_download)

    result = run_job({"tableId": 10}, merge_config, client)

    assert result.status == "partial"
    statuses = {o.template_id: o.status for o in result.outcomes}
    assert statuses == {"7": "uploaded", "8": "failed"}
    assert len(client.added) == 1


def test_upload_failure_reports_field_hint(merge_config, source_page, template_download):
    client = _client(source_page, template_download, fail_add=True)
    client.views["300"] = ViewPage(records=[], structure=[{"name": "Details"}])

    result = run_job({"tableId": 10}, merge_config, client)

    assert result.status == "failed"
    (outcome,) = result.outcomes
    assert outcome.error_type == "UploadError"
    assert '"Merged By"' in outcome.error
    assert client.attached == []


def test_check_field_names_unknown_view(merge_config):
    problems = check_field_names(FakeClient(), "MERGE", 300, merge_config)

    assert problems == ['Could not find MERGE view, please check the view id: "300"']


def test_check_field_names_all_present(merge_config):
    client = FakeClient(views={300: MERGED_VIEW})

    assert check_field_names(client, "MERGE", 300, merge_config) == []


def test_image_download_timeout_leaves_empty_value(monkeypatch, source_page):
    def timed_out(req, **kwargs):
        raise TimeoutError("timed out")

    client = DataSourceClient("key")
    monkeypatch.setattr(client, "get_view", lambda view_id, **kwargs: source_page)
    monkeypatch.setattr("urllib.request.urlopen", timed_out)

    records, _ = fetch_records(client, 100)

    assert [r["Photo"] for r in records] == ["", "", ""]


def test_truncated_view_is_logged(caplog, source_page, template_download):
    source_page.total_count = 1500

    with caplog.at_level("WARNING", logger="sheetmerge.job"):
        records, _ = fetch_records(_client(source_page, template_download), 100)

    assert len(records) == 3
    assert "holds 1500 records" in caplog.text
