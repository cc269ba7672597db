# sheetmerge/merger.py

import logging
import mimetypes
import threading
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl import load_workbook
from openpyxl.drawing.image import Image as SheetImage
from openpyxl.drawing.spreadsheet_drawing import AnchorMarker, TwoCellAnchor
from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
from PIL.Image import DecompressionBombError

from sheetmerge.columns import (
    Column,
    append_record,
    apply_columns,
    derive_columns,
    read_header_row,
    strip_placeholder,
)
from sheetmerge.errors import ImageDecodeError, MergeComputationError, MergeError, SerializationError
from sheetmerge.grouping import canonical_id
from sheetmerge.images import DecodedImage, decode_image, is_image_field, legacy_extension
from sheetmerge.results import GroupOutcome, aggregate


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "template.xlsx"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%f"

# Size given to images whose bytes Pillow cannot measure
DEFAULT_IMAGE_SIZE = (100, 100)


@dataclass(frozen=True)
class TemplateArtifact:
    content: bytes
    file_name: str = DEFAULT_TEMPLATE_NAME


@dataclass
class RowView:
    """
    A record split into cell values and images.

    `images` holds (field position, field name, image) for every image field;
    those fields are absent from `values`.
    """

    values: Dict[str, Any] = field(default_factory=dict)
    images: List[Tuple[int, str, DecodedImage]] = field(default_factory=list)


class RawImage(SheetImage):
    """
    Image whose bytes are written to the workbook exactly as given.

    Used for data Pillow cannot open; the stored format is the decoded
    extension and the size falls back to DEFAULT_IMAGE_SIZE.
    """

    def __init__(self, data: bytes, extension: str):
        self.ref = data
        self.format = _media_format(extension)
        self.width, self.height = DEFAULT_IMAGE_SIZE

    def _data(self) -> bytes:
        return self.ref


# ============================================================
# helpers
# ============================================================

def build_row_view(record: Mapping[str, Any]) -> RowView:
    """Derive the column-ready view of a record. The record is not modified."""
    view = RowView()

    for position, (name, value) in enumerate(record.items()):
        if not is_image_field(value):
            view.values[name] = value
            continue
        try:
            image = decode_image(value)
        except ImageDecodeError as e:
            logger.warning(f"Skipping image field {name!r}: {e}")
            continue
        if legacy_extension(value) != image.extension:
            logger.debug(
                f"Image field {name!r} is {image.extension}; older merges read it as {legacy_extension(value)!r}"
            )
        view.images.append((position, name, image))

    return view


def _media_format(extension: str) -> str:
    # the workbook writer needs a known content type for the media part
    extension = (extension or "").lower()
    if mimetypes.types_map.get(f".{extension}", "").startswith("image/"):
        return extension
    return "png"


def embed_image(
    worksheet: Worksheet,
    image: DecodedImage,
    row: int,
    column: int,
) -> SheetImage:
    """
    Place an image over one cell; `row` and `column` are 1-based.

    Bytes Pillow cannot open are embedded unchanged as a RawImage.
    """
    try:
        picture = SheetImage(BytesIO(image.data))
    except (OSError, DecompressionBombError) as e:
        logger.warning(f"Unreadable {image.extension} image at row {row}, column {column}; embedding raw bytes: {e}")
        picture = RawImage(image.data, image.extension)

    picture.anchor = TwoCellAnchor(
        _from=AnchorMarker(col=column - 1, row=row - 1),
        to=AnchorMarker(col=column, row=row),
    )
    worksheet.add_image(picture)
    return picture


def _load_template(artifact: TemplateArtifact) -> Workbook:
    try:
        return load_workbook(filename=BytesIO(artifact.content))
    except Exception as e:
        raise MergeComputationError(
            f"Unable to read workbook template {artifact.file_name!r}: {e}"
        ) from e


def _safe_file_name(name: Optional[str]) -> str:
    name = Path(str(name or "")).name.strip()
    return name or DEFAULT_TEMPLATE_NAME


def output_path(
    scratch_root,
    template_id,
    file_name: Optional[str],
    now: Optional[datetime] = None,
) -> Path:
    """
    `<scratch_root>/<template_id>/<timestamp>_<file_name>`.

    The template directory is created when missing. A name that is already
    taken gets a " (n)" counter before its extension.
    """
    directory = Path(scratch_root) / canonical_id(template_id)
    directory.mkdir(parents=True, exist_ok=True)

    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    name = Path(_safe_file_name(file_name))
    path = directory / f"{stamp}_{name}"

    counter = 1
    while path.exists():
        path = directory / f"{stamp}_{name.stem} ({counter}){name.suffix}"
        counter += 1
    return path


# ============================================================
# public API
# ============================================================

def build_workbook(
    records: Sequence[Mapping[str, Any]],
    artifact: TemplateArtifact,
) -> Tuple[Workbook, List[Column]]:
    """
    Load the template and append one row per record, in order.

    Returns the in-memory workbook and the column model derived from the
    first worksheet's header row.
    """
    workbook = _load_template(artifact)
    worksheet = workbook.worksheets[0]

    columns = derive_columns(strip_placeholder(read_header_row(worksheet)))
    if not columns:
        logger.warning(f"Template {artifact.file_name!r} has an empty header row; rows will be blank")
    apply_columns(worksheet, columns)

    # rows go below whatever the template already holds
    next_row = worksheet.max_row + 1
    for record in records:
        view = build_row_view(record)
        for position, name, image in view.images:
            embed_image(worksheet, image, row=next_row, column=position + 1)
        try:
            append_record(worksheet, columns, view.values)
        except (IllegalCharacterError, ValueError) as e:
            raise MergeComputationError(f"Unable to append row {next_row}: {e}") from e
        next_row += 1

    return workbook, columns


def merge_group(
    records: Sequence[Mapping[str, Any]],
    artifact: TemplateArtifact,
    template_id,
    *,
    scratch_root,
    now: Optional[datetime] = None,
) -> str:
    """
    Merge one template group and write the result to the scratch area.

    Returns the path of the written file.
    """
    logger.debug(f"Merging {len(records)} records into template {template_id}")
    workbook, _ = build_workbook(records, artifact)

    try:
        path = output_path(scratch_root, template_id, artifact.file_name, now=now)
        workbook.save(str(path))
    except OSError as e:
        raise SerializationError(f"Unable to write merged file for template {template_id}: {e}") from e

    logger.info(f"Wrote file to file system: {path}")
    return str(path)


def merge_all(
    groups: Mapping[str, Sequence[Mapping[str, Any]]],
    templates: Mapping[str, TemplateArtifact],
    *,
    scratch_root,
    cancel: Optional[threading.Event] = None,
) -> List[GroupOutcome]:
    """
    Merge every group, one at a time.

    A failing group is recorded in its outcome and the next group proceeds.
    `cancel` is only looked at between groups.
    """
    outcomes: List[GroupOutcome] = []
    templates = {canonical_id(k): v for k, v in templates.items()}

    for template_id, records in groups.items():
        template_id = canonical_id(template_id)

        if cancel is not None and cancel.is_set():
            logger.info(f"Cancelled before template {template_id}")
            outcomes.append(GroupOutcome(template_id, "cancelled", error="Cancelled"))
            continue

        artifact = templates.get(template_id)
        if artifact is None:
            logger.error(f"No template file for template {template_id}; skipping {len(records)} records")
            outcomes.append(
                GroupOutcome(
                    template_id,
                    "failed",
                    error=f"No template file for template {template_id}",
                    error_type="ConfigurationError",
                )
            )
            continue

        try:
            path = merge_group(records, artifact, template_id, scratch_root=scratch_root)
        except MergeError as e:
            logger.error(f"Merge failed for template {template_id}: {e}")
            outcomes.append(
                GroupOutcome(template_id, "failed", error=str(e), error_type=type(e).__name__)
            )
            continue

        outcomes.append(
            GroupOutcome(template_id, "merged", artifact=aggregate(template_id, path, records))
        )

    return outcomes
