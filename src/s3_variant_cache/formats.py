from dataclasses import dataclass


# Enough leading bytes to recognize every supported signature.
RECOMMENDED_READ_LENGTH = 32


@dataclass(frozen=True, slots=True)
class Format:
    """An image format, known by its extensions and media types."""

    name: str
    extensions: tuple
    media_types: tuple

    @property
    def preferred_extension(self):
        return self.extensions[0] if self.extensions else None

    @property
    def preferred_media_type(self):
        return self.media_types[0] if self.media_types else "application/octet-stream"


UNKNOWN = Format("unknown", (), ())
AVIF = Format("avif", ("avif",), ("image/avif",))
BMP = Format("bmp", ("bmp", "dib"), ("image/bmp", "image/x-ms-bmp"))
GIF = Format("gif", ("gif",), ("image/gif",))
JP2 = Format("jp2", ("jp2", "j2k", "jpx", "jpf"), ("image/jp2", "image/jpx"))
JPEG = Format("jpg", ("jpg", "jpeg", "jpe", "jif", "jfif"), ("image/jpeg",))
PNG = Format("png", ("png",), ("image/png",))
TIFF = Format("tif", ("tif", "ptif", "tiff"), ("image/tiff",))
WEBP = Format("webp", ("webp",), ("image/webp",))

ALL_FORMATS = (AVIF, BMP, GIF, JP2, JPEG, PNG, TIFF, WEBP)

_BY_EXTENSION = {ext: fmt for fmt in ALL_FORMATS for ext in fmt.extensions}
_BY_MEDIA_TYPE = {mt: fmt for fmt in ALL_FORMATS for mt in fmt.media_types}


def by_name(name):
    for fmt in ALL_FORMATS:
        if fmt.name == name:
            return fmt
    return _BY_EXTENSION.get(name.lower(), UNKNOWN)


def from_path(path):
    """Infer a format from the filename extension of a key or identifier."""
    basename = path.rsplit("/", 1)[-1]
    if "." not in basename:
        return UNKNOWN
    return _BY_EXTENSION.get(basename.rsplit(".", 1)[-1].lower(), UNKNOWN)


def from_media_type(content_type):
    """Infer a format from a Content-Type value, ignoring parameters."""
    if not content_type:
        return UNKNOWN
    media_type = content_type.split(";", 1)[0].strip().lower()
    return _BY_MEDIA_TYPE.get(media_type, UNKNOWN)


def detect(data):
    """Infer a format from leading magic bytes."""
    data = bytes(data[:RECOMMENDED_READ_LENGTH])
    if data.startswith(b"\xff\xd8\xff"):
        return JPEG
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return PNG
    if data.startswith((b"GIF87a", b"GIF89a")):
        return GIF
    if data.startswith((b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")):
        return TIFF
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return WEBP
    if data.startswith((b"\x00\x00\x00\x0cjP  \r\n\x87\n", b"\xff\x4f\xff\x51")):
        return JP2
    if data[4:8] == b"ftyp" and data[8:12] in (b"avif", b"avis"):
        return AVIF
    if data.startswith(b"BM"):
        return BMP
    return UNKNOWN
