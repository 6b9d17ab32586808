"""
Generic blob codec: JSON, then gzip.

Used for auxiliary record data, differential updates and export documents.
"""

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Any

from .exceptions import CorruptArtifactError


logger = logging.getLogger(__name__)

GZIP_MAGIC = b'\x1f\x8b'

ENCODING_GZIP = "gzip"
ENCODING_RAW = "raw"


@dataclass
class PackedBlob:
    data: bytes
    original_size: int
    compressed_size: int
    encoding: str

    @property
    def ratio(self) -> float:
        return self.original_size / self.compressed_size if self.compressed_size else 1.0


def pack_blob(obj: Any) -> PackedBlob:
    raw = json.dumps(obj, separators=(',', ':')).encode('utf-8')
    try:
        data = gzip.compress(raw, compresslevel=9)
        encoding = ENCODING_GZIP
    except (OSError, ValueError, MemoryError) as e:
        logger.warning("gzip failed, storing blob uncompressed: %s", e)
        data = raw
        encoding = ENCODING_RAW
    return PackedBlob(data=data, original_size=len(raw), compressed_size=len(data), encoding=encoding)


def unpack_blob(data: bytes) -> Any:
    """Decode a blob written by pack_blob, gzipped or raw."""
    try:
        if data[:2] == GZIP_MAGIC:
            data = gzip.decompress(data)
        return json.loads(data.decode('utf-8'))
    except (OSError, EOFError, ValueError, zlib.error) as e:
        raise CorruptArtifactError(f"Blob cannot be decoded: {e}") from e
