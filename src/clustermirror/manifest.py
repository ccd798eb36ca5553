"""
Manifest payload codec.

The authority ships the file list as a zstd-compressed, schemaless Avro
array of FileListEntry records. Frames are not guaranteed to carry a
content size, so decompression goes through a stream reader.
"""

from __future__ import annotations

import io
import logging
from typing import BinaryIO

import fastavro
import zstandard

from .errors import DecodeError
from .models import ContentEntry

logger = logging.getLogger("clustermirror.manifest")

MANIFEST_SCHEMA = {
    "type": "array",
    "items": {
        "name": "FileListEntry",
        "type": "record",
        "fields": [
            {"name": "path", "type": "string"},
            {"name": "hash", "type": "string"},
            {"name": "size", "type": "long"},
            {"name": "mtime", "type": "long"},
        ],
    },
}

_PARSED_SCHEMA = fastavro.parse_schema(MANIFEST_SCHEMA)


def decompress(source: BinaryIO) -> bytes:
    """Inflate a zstd stream.

    Raises:
        DecodeError: If the data is not a valid zstd stream.
    """
    dctx = zstandard.ZstdDecompressor()
    try:
        with dctx.stream_reader(source) as reader:
            return reader.read()
    except zstandard.ZstdError as exc:
        raise DecodeError(f"Manifest decompression failed: {exc}") from exc


def decode_entries(raw: bytes) -> list[ContentEntry]:
    """Decode an uncompressed Avro manifest.

    Raises:
        DecodeError: If the payload does not match the schema.
    """
    buf = io.BytesIO(raw)
    try:
        records = fastavro.schemaless_reader(buf, _PARSED_SCHEMA)
    except (EOFError, ValueError, IndexError, TypeError) as exc:
        raise DecodeError(f"Manifest decoding failed: {exc}") from exc

    if buf.tell() != len(raw):
        raise DecodeError(
            f"Manifest has {len(raw) - buf.tell()} trailing byte(s) after the array"
        )
    return [ContentEntry(**record) for record in records]


def parse_manifest(payload: bytes | BinaryIO) -> list[ContentEntry]:
    """Decompress and decode a manifest response body."""
    source = io.BytesIO(payload) if isinstance(payload, (bytes, bytearray)) else payload
    entries = decode_entries(decompress(source))
    logger.debug("Manifest decoded: %d entries", len(entries))
    return entries
