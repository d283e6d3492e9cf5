from typing import Optional

# Output format name to libvips save suffix.
FORMAT_SUFFIXES = {
    'jpeg': '.jpg',
    'png': '.png',
    'webp': '.webp',
    'tiff': '.tif',
    'heif': '.heic',
    'avif': '.avif',
    'gif': '.gif',
}

FORMAT_ALIASES = {
    'jpg': 'jpeg',
    'tif': 'tiff',
}

CONTENT_TYPE_FORMATS = {
    'image/jpeg': 'jpeg',
    'image/jpg': 'jpeg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/tiff': 'tiff',
    'image/heif': 'heif',
    'image/heic': 'heif',
    'image/avif': 'avif',
    'image/gif': 'gif',
    'image/svg+xml': 'png',
}


def normalize_format(name: str) -> Optional[str]:
  n = name.strip().lower()
  n = FORMAT_ALIASES.get(n, n)
  return n if n in FORMAT_SUFFIXES else None


def format_from_content_type(content_type: str) -> Optional[str]:
  return CONTENT_TYPE_FORMATS.get(content_type.split(';', 1)[0].strip().lower())


def content_type_of(fmt: str) -> str:
  return f'image/{fmt}'
