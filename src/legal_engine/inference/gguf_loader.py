"""
GGUF Tensor Loader

Pure Python GGUF file parser and dequantizer.
No llama-cpp-python - just struct parsing, numpy block decoding and torch.

Every malformed-file condition surfaces as LoadError: bad magic, unsupported
version, metadata running past the end of the file, unsupported quantization
and tensor data truncated by a partial download.

References:
- GGUF spec: https://github.com/ggerganov/ggml/blob/master/docs/gguf.md
- Q8_0 block structure: 32 elements, fp16 scale + 32 signed bytes
"""

import struct
import mmap
from pathlib import Path
from typing import Dict, Optional, Tuple, Any
from dataclasses import dataclass, field
import logging

import torch
import numpy as np

from ..errors import LoadError

logger = logging.getLogger(__name__)

# =============================================================================
# GGUF Constants
# =============================================================================

GGUF_MAGIC = 0x46554747  # "GGUF" in little-endian
GGUF_DEFAULT_ALIGNMENT = 32

# Smallest possible file: magic + version + n_tensors + n_kv
GGUF_MIN_HEADER_BYTES = 4 + 4 + 8 + 8

# GGML Types (from ggml.h)
GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q4_1 = 3
GGML_TYPE_Q5_0 = 6
GGML_TYPE_Q5_1 = 7
GGML_TYPE_Q8_0 = 8
GGML_TYPE_Q8_1 = 9
GGML_TYPE_Q2_K = 10
GGML_TYPE_Q3_K = 11
GGML_TYPE_Q4_K = 12
GGML_TYPE_Q5_K = 13
GGML_TYPE_Q6_K = 14
GGML_TYPE_Q8_K = 15
GGML_TYPE_BF16 = 30

QK4_0 = 32  # Elements per block for Q4_0
QK8_0 = 32

# Type info for the types we can dequantize: (block_size, bytes_per_block)
QUANT_INFO = {
    GGML_TYPE_F32: (1, 4),
    GGML_TYPE_F16: (1, 2),
    GGML_TYPE_BF16: (1, 2),
    GGML_TYPE_Q4_0: (QK4_0, 2 + QK4_0 // 2),  # fp16 scale + 16 bytes nibbles
    GGML_TYPE_Q8_0: (QK8_0, 2 + QK8_0),  # fp16 scale + 32 bytes
}

GGUF_TYPE_NAMES = {
    GGML_TYPE_F32: "F32",
    GGML_TYPE_F16: "F16",
    GGML_TYPE_BF16: "BF16",
    GGML_TYPE_Q4_0: "Q4_0",
    GGML_TYPE_Q4_1: "Q4_1",
    GGML_TYPE_Q5_0: "Q5_0",
    GGML_TYPE_Q5_1: "Q5_1",
    GGML_TYPE_Q8_0: "Q8_0",
    GGML_TYPE_Q8_1: "Q8_1",
    GGML_TYPE_Q2_K: "Q2_K",
    GGML_TYPE_Q3_K: "Q3_K",
    GGML_TYPE_Q4_K: "Q4_K",
    GGML_TYPE_Q5_K: "Q5_K",
    GGML_TYPE_Q6_K: "Q6_K",
    GGML_TYPE_Q8_K: "Q8_K",
}

# Metadata value types
GGUF_METADATA_VALUE_TYPE_UINT8 = 0
GGUF_METADATA_VALUE_TYPE_INT8 = 1
GGUF_METADATA_VALUE_TYPE_UINT16 = 2
GGUF_METADATA_VALUE_TYPE_INT16 = 3
GGUF_METADATA_VALUE_TYPE_UINT32 = 4
GGUF_METADATA_VALUE_TYPE_INT32 = 5
GGUF_METADATA_VALUE_TYPE_FLOAT32 = 6
GGUF_METADATA_VALUE_TYPE_BOOL = 7
GGUF_METADATA_VALUE_TYPE_STRING = 8
GGUF_METADATA_VALUE_TYPE_ARRAY = 9
GGUF_METADATA_VALUE_TYPE_UINT64 = 10
GGUF_METADATA_VALUE_TYPE_INT64 = 11
GGUF_METADATA_VALUE_TYPE_FLOAT64 = 12

# Fixed-width scalar types: (struct format, byte width)
_SCALAR_FORMATS = {
    GGUF_METADATA_VALUE_TYPE_UINT8: ("<B", 1),
    GGUF_METADATA_VALUE_TYPE_INT8: ("<b", 1),
    GGUF_METADATA_VALUE_TYPE_UINT16: ("<H", 2),
    GGUF_METADATA_VALUE_TYPE_INT16: ("<h", 2),
    GGUF_METADATA_VALUE_TYPE_UINT32: ("<I", 4),
    GGUF_METADATA_VALUE_TYPE_INT32: ("<i", 4),
    GGUF_METADATA_VALUE_TYPE_FLOAT32: ("<f", 4),
    GGUF_METADATA_VALUE_TYPE_UINT64: ("<Q", 8),
    GGUF_METADATA_VALUE_TYPE_INT64: ("<q", 8),
    GGUF_METADATA_VALUE_TYPE_FLOAT64: ("<d", 8),
}


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class GGUFTensorInfo:
    """Metadata for a single tensor in the GGUF file."""
    name: str
    n_dims: int
    dims: Tuple[int, ...]
    dtype: int  # GGML type
    offset: int  # Offset from start of tensor data section

    @property
    def numel(self) -> int:
        """Total number of elements."""
        result = 1
        for d in self.dims:
            result *= d
        return result

    @property
    def shape(self) -> Tuple[int, ...]:
        """PyTorch-style shape (reversed from GGML)."""
        return tuple(reversed(self.dims))

    @property
    def dtype_name(self) -> str:
        return GGUF_TYPE_NAMES.get(self.dtype, f"UNKNOWN({self.dtype})")

    @property
    def supported(self) -> bool:
        return self.dtype in QUANT_INFO

    @property
    def nbytes(self) -> int:
        """Calculate byte size based on quantization type."""
        if not self.supported:
            raise LoadError(
                f"Unsupported quantization {self.dtype_name} for tensor {self.name}"
            )

        block_size, bytes_per_block = QUANT_INFO[self.dtype]
        n_blocks = (self.numel + block_size - 1) // block_size
        return n_blocks * bytes_per_block


@dataclass
class GGUFHeader:
    """GGUF file header."""
    magic: int
    version: int
    n_tensors: int
    n_kv: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    tensors: Dict[str, GGUFTensorInfo] = field(default_factory=dict)
    tensor_data_offset: int = 0


# =============================================================================
# GGUF Parser
# =============================================================================

class GGUFReader:
    """
    Memory-mapped GGUF file reader.

    Usage:
        with GGUFReader("model.gguf") as reader:
            tensor = reader.read_tensor("blk.0.attn_q.weight")
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file = None
        self._mmap = None
        self._header: Optional[GGUFHeader] = None
        self._cursor = 0

    def __enter__(self) -> "GGUFReader":
        try:
            self._file = open(self.path, "rb")
        except OSError as e:
            raise LoadError(f"Cannot open GGUF file {self.path}: {e}") from e

        size = self.path.stat().st_size
        if size < GGUF_MIN_HEADER_BYTES:
            self._file.close()
            raise LoadError(f"File too short to be GGUF ({size} bytes): {self.path}")

        self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        try:
            self._parse_header()
        except BaseException:
            self.__exit__(None, None, None)
            raise
        return self

    def __exit__(self, *args):
        if self._mmap:
            self._mmap.close()
            self._mmap = None
        if self._file:
            self._file.close()
            self._file = None

    @property
    def header(self) -> GGUFHeader:
        if self._header is None:
            raise RuntimeError("File not opened - use context manager")
        return self._header

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.header.metadata

    @property
    def tensors(self) -> Dict[str, GGUFTensorInfo]:
        return self.header.tensors

    @property
    def file_size(self) -> int:
        return len(self._mmap)

    def _read_bytes(self, n: int) -> bytes:
        """Read n bytes from current position."""
        end = self._cursor + n
        if end > len(self._mmap):
            raise LoadError(
                f"Header truncated: need {n} bytes at offset {self._cursor}, "
                f"file is {len(self._mmap)} bytes"
            )
        data = self._mmap[self._cursor:end]
        self._cursor = end
        return data

    def _read_scalar(self, value_type: int):
        fmt, width = _SCALAR_FORMATS[value_type]
        return struct.unpack(fmt, self._read_bytes(width))[0]

    def _read_u32(self) -> int:
        return self._read_scalar(GGUF_METADATA_VALUE_TYPE_UINT32)

    def _read_u64(self) -> int:
        return self._read_scalar(GGUF_METADATA_VALUE_TYPE_UINT64)

    def _read_string(self) -> str:
        """Read length-prefixed string."""
        length = self._read_u64()
        data = self._read_bytes(length)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LoadError(f"Invalid UTF-8 string at offset {self._cursor - length}") from e

    def _read_metadata_value(self, value_type: int) -> Any:
        """Read a metadata value based on its type."""
        if value_type in _SCALAR_FORMATS:
            return self._read_scalar(value_type)
        elif value_type == GGUF_METADATA_VALUE_TYPE_BOOL:
            return self._read_scalar(GGUF_METADATA_VALUE_TYPE_UINT8) != 0
        elif value_type == GGUF_METADATA_VALUE_TYPE_STRING:
            return self._read_string()
        elif value_type == GGUF_METADATA_VALUE_TYPE_ARRAY:
            arr_type = self._read_u32()
            arr_len = self._read_u64()
            # Every element takes at least one byte
            if arr_len > len(self._mmap) - self._cursor:
                raise LoadError(f"Metadata array length {arr_len} exceeds file size")
            return [self._read_metadata_value(arr_type) for _ in range(arr_len)]
        else:
            raise LoadError(f"Unknown metadata value type: {value_type}")

    def _parse_header(self):
        """Parse GGUF header, metadata, and tensor info."""
        self._cursor = 0

        magic = self._read_u32()
        if magic != GGUF_MAGIC:
            raise LoadError(f"Invalid GGUF magic: {hex(magic)}")

        version = self._read_u32()
        if version < 2 or version > 3:
            raise LoadError(f"Unsupported GGUF version: {version}")

        n_tensors = self._read_u64()
        n_kv = self._read_u64()

        self._header = GGUFHeader(
            magic=magic,
            version=version,
            n_tensors=n_tensors,
            n_kv=n_kv,
        )

        for _ in range(n_kv):
            key = self._read_string()
            value_type = self._read_u32()
            value = self._read_metadata_value(value_type)
            self._header.metadata[key] = value

        for _ in range(n_tensors):
            name = self._read_string()
            n_dims = self._read_u32()
            if n_dims > 4:
                raise LoadError(f"Tensor {name} has {n_dims} dims (max 4)")
            dims = tuple(self._read_u64() for _ in range(n_dims))
            dtype = self._read_u32()
            offset = self._read_u64()

            self._header.tensors[name] = GGUFTensorInfo(
                name=name,
                n_dims=n_dims,
                dims=dims,
                dtype=dtype,
                offset=offset,
            )

        alignment = int(self._header.metadata.get("general.alignment", GGUF_DEFAULT_ALIGNMENT))
        if alignment <= 0:
            raise LoadError(f"Invalid alignment: {alignment}")
        self._header.tensor_data_offset = (self._cursor + alignment - 1) // alignment * alignment

    def validate(self) -> None:
        """
        Check every tensor is dequantizable and fully present on disk.

        Raises:
            LoadError: on the first unsupported or truncated tensor
        """
        for name, info in self.tensors.items():
            end = self.header.tensor_data_offset + info.offset + info.nbytes
            if end > self.file_size:
                raise LoadError(
                    f"Tensor {name} truncated: data ends at byte {end}, "
                    f"file is {self.file_size} bytes"
                )

    def read_tensor_raw(self, name: str) -> bytes:
        """Read raw tensor bytes without dequantization."""
        if name not in self.tensors:
            raise KeyError(f"Tensor not found: {name}")

        info = self.tensors[name]
        start = self.header.tensor_data_offset + info.offset
        end = start + info.nbytes
        if end > self.file_size:
            raise LoadError(f"Tensor {name} truncated at byte {self.file_size} (needs {end})")
        return self._mmap[start:end]

    def read_tensor(
        self,
        name: str,
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        """
        Read and dequantize a tensor.

        Args:
            name: Tensor name in the GGUF file
            device: Target device
            dtype: Target dtype (dequantized output)

        Returns:
            Dequantized tensor
        """
        info = self.tensors[name] if name in self.tensors else None
        if info is None:
            raise KeyError(f"Tensor not found: {name}")

        raw_data = self.read_tensor_raw(name)
        decode = _DECODERS[info.dtype]
        tensor = decode(raw_data, info.numel)

        tensor = tensor.reshape(info.shape)
        return tensor.to(device=device, dtype=dtype)


# =============================================================================
# Dequantization Functions
# =============================================================================

def _decode_f32(data: bytes, numel: int) -> torch.Tensor:
    """Decode F32 tensor."""
    arr = np.frombuffer(data, dtype=np.float32)[:numel]
    return torch.from_numpy(arr.copy())


def _decode_f16(data: bytes, numel: int) -> torch.Tensor:
    """Decode F16 tensor."""
    arr = np.frombuffer(data, dtype=np.float16)[:numel]
    return torch.from_numpy(arr.astype(np.float32))


def _decode_bf16(data: bytes, numel: int) -> torch.Tensor:
    """Decode BF16 tensor."""
    # BF16 is the top half of an F32: shift into place and reinterpret
    arr = np.frombuffer(data, dtype=np.uint16)[:numel]
    arr32 = arr.astype(np.uint32) << 16
    return torch.from_numpy(arr32.view(np.float32).copy())


def _split_blocks(data: bytes, numel: int, block_size: int, bytes_per_block: int):
    """View raw bytes as (n_blocks, bytes_per_block) and split off the fp16 scale."""
    n_blocks = (numel + block_size - 1) // block_size
    expected_bytes = n_blocks * bytes_per_block
    if len(data) < expected_bytes:
        raise LoadError(f"Data too short: {len(data)} < {expected_bytes}")

    blocks = np.frombuffer(data, dtype=np.uint8)[:expected_bytes].reshape(n_blocks, bytes_per_block)
    scales = blocks[:, :2].copy().view(np.float16).astype(np.float32)  # (n_blocks, 1)
    return blocks, scales


def _dequantize_q8_0(data: bytes, numel: int) -> torch.Tensor:
    """
    Dequantize Q8_0 tensor.

    Q8_0 block structure (34 bytes per 32 elements):
        - d: float16 scale factor (2 bytes)
        - qs: 32 bytes of signed 8-bit quantized values

    Dequantization: value = qs * d
    """
    blocks, scales = _split_blocks(data, numel, QK8_0, 2 + QK8_0)
    qs = blocks[:, 2:].view(np.int8).astype(np.float32)
    values = (qs * scales).reshape(-1)
    return torch.from_numpy(values[:numel].copy())


def _dequantize_q4_0(data: bytes, numel: int) -> torch.Tensor:
    """
    Dequantize Q4_0 tensor.

    Q4_0 block structure (18 bytes per 32 elements):
        - d: float16 scale factor (2 bytes)
        - qs: 16 bytes; low nibbles hold elements 0-15, high nibbles 16-31

    Dequantization: value = (nibble - 8) * d
    """
    blocks, scales = _split_blocks(data, numel, QK4_0, 2 + QK4_0 // 2)
    qs = blocks[:, 2:].astype(np.int16)
    low = (qs & 0x0F) - 8
    high = ((qs >> 4) & 0x0F) - 8
    values = (np.concatenate([low, high], axis=1).astype(np.float32) * scales).reshape(-1)
    return torch.from_numpy(values[:numel].copy())


_DECODERS = {
    GGML_TYPE_F32: _decode_f32,
    GGML_TYPE_F16: _decode_f16,
    GGML_TYPE_BF16: _decode_bf16,
    GGML_TYPE_Q8_0: _dequantize_q8_0,
    GGML_TYPE_Q4_0: _dequantize_q4_0,
}


# =============================================================================
# Convenience Functions
# =============================================================================

def inspect_gguf(path: str | Path) -> Dict[str, Any]:
    """
    Return GGUF file info without loading tensors.
    """
    with GGUFReader(path) as reader:
        tensor_info = {}
        for name, info in reader.tensors.items():
            tensor_info[name] = {
                "shape": info.shape,
                "dtype": info.dtype_name,
                "numel": info.numel,
                "nbytes": info.nbytes if info.supported else None,
            }

        return {
            "version": reader.header.version,
            "n_tensors": reader.header.n_tensors,
            "metadata": reader.header.metadata,
            "tensors": tensor_info,
        }
