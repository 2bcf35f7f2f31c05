"""
Payload compression for federated update transmission.
Compresses serialized updates before encryption to reduce network overhead.
"""

from typing import Any, Dict, Tuple
import logging

import lz4.frame

from .errors import CompressionError

logger = logging.getLogger(__name__)


class LZ4Compressor:
    """LZ4-based compression for serialized payloads."""

    def __init__(self, compression_level: int = 1):
        """
        Initialize LZ4 compressor.

        Args:
            compression_level: LZ4 compression level (1-12, higher = better compression)
        """
        self.compression_level = max(1, min(12, compression_level))

    def compress(self, data: bytes) -> Tuple[bytes, Dict[str, Any]]:
        """Compress a payload using LZ4."""
        try:
            compressed_data = lz4.frame.compress(data, compression_level=self.compression_level)

            metadata = {
                'algorithm': self.get_compression_name(),
                'original_size': len(data),
                'compressed_size': len(compressed_data),
                'compression_level': self.compression_level
            }

            logger.debug(f"LZ4 compressed {len(data)} -> {len(compressed_data)} bytes")
            return compressed_data, metadata

        except Exception as e:
            logger.error(f"LZ4 compression failed: {str(e)}")
            raise CompressionError(f"LZ4 compression failed: {str(e)}")

    def decompress(self, compressed_data: bytes) -> bytes:
        """Decompress an LZ4-compressed payload."""
        try:
            data = lz4.frame.decompress(compressed_data)
            logger.debug(f"LZ4 decompressed {len(compressed_data)} -> {len(data)} bytes")
            return data

        except Exception as e:
            logger.error(f"LZ4 decompression failed: {str(e)}")
            raise CompressionError(f"LZ4 decompression failed: {str(e)}")

    def get_compression_name(self) -> str:
        return "lz4"


def get_compression_ratio(original_size: int, compressed_size: int) -> float:
    """Calculate compression ratio (compressed / original)."""
    if original_size == 0:
        return 0.0
    return compressed_size / original_size
