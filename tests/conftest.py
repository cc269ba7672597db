from io import BytesIO

import pytest
from openpyxl import Workbook
from PIL import Image

from sheetmerge.config import MergeConfig
from sheetmerge.data_sources import FileDownload, ViewPage
from sheetmerge.errors import UpstreamFetchError


def make_template(headers, extra_rows=()) -> bytes:
    wb = Workbook()
    ws = wb.active
    if headers:
        ws.append(list(headers))
    for row in extra_rows:
        ws.append(list(row))
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def make_png(color="red", size=(4, 4)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeClient:
    """In-memory stand-in for DataSourceClient."""

    def __init__(self, views=None, files=None, fail_add=False):
        self.views = {str(k): v for k, v in (views or {}).items()}
        self.files = {tuple(str(p) for p in k): v for k, v in (files or {}).items()}
        self.fail_add = fail_add
        self.access_token = None
        self.logins = []
        self.updates = []
        self.added = []
        self.attached = []

    def set_access_token(self, token):
        self.access_token = token

    def login(self, username, password):
        self.logins.append((username, password))
        self.access_token = "from-login"

    def get_view(self, view_id, start=0, max_records=1000):
        page = self.views.get(str(view_id))
        if page is None:
            raise UpstreamFetchError("no such view", status=401, verb="GET", href=f"/views/{view_id}")
        return page

    def get_file(self, view_id, record_id, field_name):
        value = self.files.get((str(view_id), str(record_id), field_name))
        if isinstance(value, Exception):
            raise value
        return value

    def update_record(self, view_id, record_id, fields):
        self.updates.append((view_id, record_id, fields))
        return {}

    def add_record(self, view_id, fields):
        if self.fail_add:
            raise UpstreamFetchError("HTTP 400", status=400, verb="POST", href="/records")
        self.added.append((view_id, fields))
        return {"id": 900 + len(self.added)}

    def attach_file(self, view_id, record_id, field_name, file_path):
        self.attached.append((view_id, record_id, field_name, file_path))
        return {}


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def merge_config(tmp_path):
    return MergeConfig.from_dict({
        "account": {"api_key": "key", "access_token": "t" * 32},
        "source_tables": {
            "template_relationship_field_name": "Template",
            "template_relationship_field_name_id": "Template(id)",
            "table_ids_to_view_ids": {10: 100},
        },
        "template_table": {"view_id": 200, "field_name_for_template_document": "Document"},
        "merged_doc_table": {
            "view_id": 300,
            "merged_doc_details_field_name": "Details",
            "merged_doc_to_template_relationship_field_name": "Template",
            "merge_user_field_name": "Merged By",
            "merged_document_field_name": "Merged Document",
        },
        "scratch_root": str(tmp_path / "scratch"),
    })


@pytest.fixture
def source_page():
    return ViewPage(
        records=[
            {"id": 1, "Record ID": "R-1", "Template(id)": 7, "Name": "Alice", "Last User(id)": 42},
            {"id": 2, "Record ID": "R-2", "Template(id)": 7, "Name": "Bob", "Last User(id)": 43},
            {"id": 3, "Record ID": "R-3", "Name": "Nobody"},
        ],
        structure=[
            {"name": "Record ID", "type": "autoIncrement"},
            {"name": "Name", "type": "shortAnswer"},
            {"name": "Photo", "type": "image"},
        ],
    )


@pytest.fixture
def template_download():
    return FileDownload(
        content=make_template(["Record ID", "Name", "Photo"]),
        content_disposition='attachment; filename="report.xlsx"',
    )
