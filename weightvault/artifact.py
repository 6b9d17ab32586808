"""
WeightVault Artifact Format
===========================

Serialized, compressed representation of a model, tagged with the backend
that produced it.

File Format:
- Magic header (8 bytes) + format version (<I) + header length (<Q)
- JSON header (backend tag, layer entries, tensor offsets, metadata)
- Encoded tensor payloads, back to back

Tensor encodings (smallest one wins, then optionally zlib-deflated):
- f32:  raw float32 values
- cb4:  float32 codebook + 4-bit packed indices (<= 16 distinct values)
- cb8:  float32 codebook + uint8 indices (<= 256 distinct values)
- cb16: float32 codebook + uint16 indices (<= 65536 distinct values)
"""

import hashlib
import json
import struct
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .codec import BackendType
from .exceptions import CorruptArtifactError
from .model import LayerKind, SUPPORTED_DTYPES


ARTIFACT_MAGIC = b'WVAULT01'
ARTIFACT_VERSION = 1

ENCODING_F32 = "f32"
ENCODING_CB4 = "cb4"
ENCODING_CB8 = "cb8"
ENCODING_CB16 = "cb16"

INDEX_DTYPES = {
    ENCODING_CB8: np.dtype('<u1'),
    ENCODING_CB16: np.dtype('<u2'),
}

_F32 = np.dtype('<f4')


# ============================================================
# BIT PACKING
# ============================================================

def pack_4bit(values: np.ndarray) -> np.ndarray:
    """Pack two 4-bit values into one byte (odd lengths are zero-padded)."""
    values = values.astype(np.uint8)
    if len(values) % 2:
        values = np.append(values, np.uint8(0))
    return ((values[0::2] << 4) | (values[1::2] & 0x0F)).astype(np.uint8)


def unpack_4bit(packed: np.ndarray, n_values: int) -> np.ndarray:
    """Unpack bytes to 4-bit values, trimmed to n_values."""
    unpacked = np.zeros(len(packed) * 2, dtype=np.uint8)
    unpacked[0::2] = (packed >> 4) & 0x0F
    unpacked[1::2] = packed & 0x0F
    return unpacked[:n_values]


# ============================================================
# TENSOR ENCODING
# ============================================================

@dataclass
class EncodedTensor:
    """One weight tensor as stored inside an artifact."""
    shape: Tuple[int, ...]
    dtype: str
    encoding: str
    deflated: bool
    payload: bytes

    @property
    def n_values(self) -> int:
        return int(np.prod(self.shape)) if self.shape else 1

    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    def _body(self) -> bytes:
        if not self.deflated:
            return self.payload
        try:
            return zlib.decompress(self.payload)
        except zlib.error as e:
            raise CorruptArtifactError(f"Tensor payload failed to inflate: {e}") from e

    def decode_parts(self) -> Tuple[Optional[np.ndarray], np.ndarray]:
        """
        Split the payload into (codebook, indices).

        For f32 tensors the codebook is None and the second element holds the
        values themselves.
        """
        body = self._body()
        n = self.n_values

        if self.encoding == ENCODING_F32:
            if len(body) != n * 4:
                raise CorruptArtifactError(f"f32 tensor expected {n * 4} bytes, got {len(body)}")
            return None, np.frombuffer(body, dtype=_F32).astype(np.float32)

        if len(body) < 4:
            raise CorruptArtifactError("Codebook tensor truncated")
        (k,) = struct.unpack('<I', body[:4])
        pos = 4 + k * 4
        if len(body) < pos:
            raise CorruptArtifactError("Codebook truncated")
        codebook = np.frombuffer(body[4:pos], dtype=_F32).astype(np.float32)

        if self.encoding == ENCODING_CB4:
            packed = np.frombuffer(body[pos:], dtype=np.uint8)
            if len(packed) != (n + 1) // 2:
                raise CorruptArtifactError("4-bit index block has wrong length")
            indices = unpack_4bit(packed, n)
        elif self.encoding in INDEX_DTYPES:
            index_dtype = INDEX_DTYPES[self.encoding]
            if len(body) - pos != n * index_dtype.itemsize:
                raise CorruptArtifactError(f"{self.encoding} index block has wrong length")
            indices = np.frombuffer(body[pos:], dtype=index_dtype)
        else:
            raise CorruptArtifactError(f"Unknown tensor encoding: {self.encoding}")

        indices = indices.astype(np.int64)
        if indices.size and int(indices.max()) >= k:
            raise CorruptArtifactError("Codebook index out of range")
        return codebook, indices

    def header(self) -> dict:
        return {
            'shape': list(self.shape),
            'dtype': self.dtype,
            'encoding': self.encoding,
            'deflated': self.deflated,
        }


def encode_tensor(values: np.ndarray, shape: Tuple[int, ...], dtype: str = "float32") -> EncodedTensor:
    """Encode compressed float32 values with the smallest available layout."""
    flat = np.ascontiguousarray(values, dtype=np.float32).reshape(-1)
    n = flat.size

    candidates: List[Tuple[int, str]] = [(n * 4, ENCODING_F32)]
    codebook, inverse = np.unique(flat, return_inverse=True)
    k = len(codebook)
    if k <= 16:
        candidates.append((4 + 4 * k + (n + 1) // 2, ENCODING_CB4))
    if k <= 256:
        candidates.append((4 + 4 * k + n, ENCODING_CB8))
    if k <= 65536:
        candidates.append((4 + 4 * k + 2 * n, ENCODING_CB16))
    # Stable min: ties keep the earlier (f32) candidate
    _, encoding = min(candidates, key=lambda c: c[0])

    if encoding == ENCODING_F32:
        body = flat.astype(_F32).tobytes()
    else:
        inverse = inverse.reshape(-1)
        if encoding == ENCODING_CB4:
            index_bytes = pack_4bit(inverse).tobytes()
        else:
            index_bytes = inverse.astype(INDEX_DTYPES[encoding]).tobytes()
        body = struct.pack('<I', k) + codebook.astype(_F32).tobytes() + index_bytes

    deflated_body = zlib.compress(body, 9)
    if len(deflated_body) < len(body):
        return EncodedTensor(tuple(shape), dtype, encoding, True, deflated_body)
    return EncodedTensor(tuple(shape), dtype, encoding, False, body)


# ============================================================
# ARTIFACT
# ============================================================

@dataclass
class LayerEntry:
    """A layer's structure plus its encoded tensors."""
    kind: LayerKind
    config: Dict[str, Any]
    tensors: List[EncodedTensor] = field(default_factory=list)
    passthrough: bool = False  # kept as-is after a per-layer failure


@dataclass
class CompressedArtifact:
    """Compressed model tagged with the backend that produced it."""
    backend_type: BackendType
    layers: List[LayerEntry] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def compressed_size(self) -> int:
        return sum(t.size_bytes for layer in self.layers for t in layer.tensors)

    def to_bytes(self) -> bytes:
        layer_dicts = []
        chunks = []
        offset = 0
        for layer in self.layers:
            tensor_dicts = []
            for tensor in layer.tensors:
                d = tensor.header()
                d['offset'] = offset
                d['size'] = tensor.size_bytes
                tensor_dicts.append(d)
                chunks.append(tensor.payload)
                offset += tensor.size_bytes
            layer_dicts.append({
                'kind': layer.kind.value,
                'config': layer.config,
                'passthrough': layer.passthrough,
                'tensors': tensor_dicts,
            })

        header = json.dumps({
            'backend_type': self.backend_type.value,
            'metadata': self.metadata,
            'layers': layer_dicts,
        }).encode('utf-8')

        data = bytearray()
        data.extend(ARTIFACT_MAGIC)
        data.extend(struct.pack('<I', ARTIFACT_VERSION))
        data.extend(struct.pack('<Q', len(header)))
        data.extend(header)
        for chunk in chunks:
            data.extend(chunk)
        return bytes(data)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'CompressedArtifact':
        """Parse an artifact, raising CorruptArtifactError on any structural problem."""
        if len(data) < 20 or data[:8] != ARTIFACT_MAGIC:
            raise CorruptArtifactError(f"Invalid artifact magic: {bytes(data[:8])!r}")
        version, header_len = struct.unpack('<IQ', data[8:20])
        if version != ARTIFACT_VERSION:
            raise CorruptArtifactError(f"Unsupported artifact version: {version}")
        if 20 + header_len > len(data):
            raise CorruptArtifactError("Artifact header truncated")

        payload = memoryview(data)[20 + header_len:]
        try:
            header = json.loads(bytes(data[20:20 + header_len]).decode('utf-8'))
            layers = []
            for layer_dict in header['layers']:
                tensors = []
                for t in layer_dict['tensors']:
                    start, size = int(t['offset']), int(t['size'])
                    if start < 0 or size < 0 or start + size > len(payload):
                        raise CorruptArtifactError("Tensor payload out of bounds")
                    if t['dtype'] not in SUPPORTED_DTYPES:
                        raise CorruptArtifactError(f"Unsupported dtype: {t['dtype']}")
                    shape = tuple(int(d) for d in t['shape'])
                    if any(d <= 0 for d in shape):
                        raise CorruptArtifactError(f"Invalid tensor shape: {list(shape)}")
                    tensors.append(EncodedTensor(
                        shape=shape,
                        dtype=t['dtype'],
                        encoding=t['encoding'],
                        deflated=bool(t['deflated']),
                        payload=bytes(payload[start:start + size]),
                    ))
                layers.append(LayerEntry(
                    kind=LayerKind.parse(layer_dict['kind']),
                    config=dict(layer_dict['config']),
                    tensors=tensors,
                    passthrough=bool(layer_dict.get('passthrough', False)),
                ))
            return cls(
                backend_type=BackendType(header['backend_type']),
                layers=layers,
                metadata=dict(header.get('metadata') or {}),
            )
        except CorruptArtifactError:
            raise
        except (KeyError, TypeError, ValueError, UnicodeDecodeError) as e:
            raise CorruptArtifactError(f"Malformed artifact header: {e}") from e

    def content_hash(self) -> str:
        return hashlib.sha256(self.to_bytes()).hexdigest()
