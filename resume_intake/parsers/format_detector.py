"""Classify an uploaded payload by its leading magic bytes."""

from resume_intake.parsers.models import FormatTag

SIGNATURE_WINDOW = 1024  # bytes inspected; nothing past this is read

_PDF_MAGIC = b"%PDF-"
_ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
_IMAGE_MAGICS = (
    b"\x89PNG\r\n\x1a\n",
    b"\xff\xd8\xff",  # JPEG
    b"GIF87a",
    b"GIF89a",
    b"II*\x00",  # TIFF, little-endian
    b"MM\x00*",  # TIFF, big-endian
    b"BM",
)
_UTF8_BOM = b"\xef\xbb\xbf"

_LABELS = {
    "pdf": "PDF document",
    "container": "ZIP-packaged document (DOCX)",
    "image": "raster image",
    "unknown": "unrecognised format",
}


def detect_format(payload: bytes) -> FormatTag:
    """Return the format tag for a payload. Never raises."""
    head = bytes(payload[:SIGNATURE_WINDOW])

    # Some generators emit a BOM or blank lines before the PDF header
    if head.removeprefix(_UTF8_BOM).lstrip().startswith(_PDF_MAGIC):
        return "pdf"
    if head.startswith(_ZIP_MAGICS):
        return "container"
    if head.startswith(_IMAGE_MAGICS):
        return "image"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image"
    return "unknown"


def describe_format(tag: FormatTag) -> str:
    """Human-readable label for a format tag."""
    return _LABELS.get(tag, _LABELS["unknown"])
