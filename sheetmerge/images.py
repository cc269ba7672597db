# sheetmerge/images.py

import base64
import binascii
import re
from dataclasses import dataclass

from sheetmerge.errors import ImageDecodeError


IMAGE_PREFIX = "data:image"

_DATA_URL_RE = re.compile(
    r"^data:image/(?P<subtype>[A-Za-z0-9.+-]+);base64,(?P<payload>.*)$",
    flags=re.DOTALL,
)


@dataclass(frozen=True)
class DecodedImage:
    data: bytes
    extension: str


# -------------------------------------------------
# Public API
# -------------------------------------------------

def is_image_field(value) -> bool:
    """
    True when a record value holds an inline image.

    Image fields are filled upstream with a base64 data URL, or with an empty
    string when the attachment could not be fetched. Only the former counts.
    """
    return isinstance(value, str) and value.startswith(IMAGE_PREFIX)


def decode_image(value: str) -> DecodedImage:
    """
    Decode a `data:image/<subtype>;base64,<payload>` string.

    The extension is the full MIME subtype, so `jpeg` and `svg+xml` survive
    intact. The payload is decoded byte for byte.
    """
    m = _DATA_URL_RE.match(value or "")
    if not m:
        raise ImageDecodeError(f"Not a base64 image data URL: {value[:40]!r}")

    payload = re.sub(r"\s+", "", m.group("payload"))
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"Invalid base64 image payload: {e}") from e

    return DecodedImage(data=data, extension=m.group("subtype").lower())


def encode_image(data: bytes, extension: str) -> str:
    """Build the data URL stored in a record's image field."""
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:image/{extension};base64,{b64}"


def legacy_extension(value: str) -> str:
    """
    The fixed-offset token older merges used (characters 11-13).

    Truncates four-letter subtypes, e.g. `jpeg` becomes `jpe`.
    """
    return (value or "")[11:14]
