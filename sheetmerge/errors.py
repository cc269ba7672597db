# sheetmerge/errors.py

from typing import Optional


class MergeError(Exception):
    """Base class for every failure raised by sheetmerge."""


class ConfigurationError(MergeError):
    """Invalid or missing view id, unmapped table id, missing field name."""


class UpstreamFetchError(MergeError):
    """
    A request to the data source failed.

    Keeps the pieces of the HTTP exchange that are useful in a log line.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        verb: str = "",
        href: str = "",
        body: str = "",
    ):
        super().__init__(message)
        self.status = status
        self.verb = verb
        self.href = href
        self.body = body

    def details(self) -> dict:
        return {
            "status": self.status,
            "href": self.href,
            "verb": self.verb,
            "body": self.body,
        }


class MergeComputationError(MergeError):
    """The template could not be parsed or merged."""


class ImageDecodeError(MergeComputationError):
    """A field looked like an image data URL but could not be decoded."""


class SerializationError(MergeError):
    """The merged workbook could not be written to disk."""


class UploadError(MergeError):
    """
    Creating the merged document record or attaching the file failed.

    `hints` lists configured field names that the target view does not have,
    which is the usual cause.
    """

    def __init__(self, message: str, hints: Optional[list] = None):
        super().__init__(message)
        self.hints = list(hints or [])
