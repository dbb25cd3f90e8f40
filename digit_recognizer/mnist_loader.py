"""
mnist_loader.py
~~~~~~~~~~~~~~~

Decoder for the MNIST IDX image/label files.

Labels file (big-endian):
- Bytes 0-3: Magic number (2049)
- Bytes 4-7: Number of labels
- Bytes 8+: One byte per label (0-9)

Images file (big-endian):
- Bytes 0-3: Magic number (2051)
- Bytes 4-7: Number of images
- Bytes 8-11: Number of rows
- Bytes 12-15: Number of columns
- Bytes 16+: One byte per pixel (0-255), image by image, row by row

Raw bytes come from a ``ByteSource``; once they are in hand, decoding is
synchronous. Malformed input is logged and decodes to an empty list.
"""

import os
import gzip
import struct
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .matrix import Matrix

logger = logging.getLogger(__name__)

LABELS_MAGIC_NUMBER = 2049
IMAGES_MAGIC_NUMBER = 2051

LABELS_HEADER_SIZE = 8
IMAGES_HEADER_SIZE = 16

NUM_CLASSES = 10

TRAIN_IMAGES_FILE = 'train-images-idx3-ubyte'
TRAIN_LABELS_FILE = 'train-labels-idx1-ubyte'
TEST_IMAGES_FILE = 't10k-images-idx3-ubyte'
TEST_LABELS_FILE = 't10k-labels-idx1-ubyte'


class FormatError(ValueError):
    """The bytes are not a valid IDX labels/images pair."""


class MnistEntry(NamedTuple):
    label: int
    image: List[float]


# ============================================================================
# BYTE SOURCES
# ============================================================================

class ByteSource(ABC):
    """Something that can asynchronously hand over a complete byte buffer."""

    @abstractmethod
    async def open(self) -> bytes:
        """
        Return the full contents of the source.

        Transport errors (missing file, etc.) are raised to the caller.
        """


class FileByteSource(ByteSource):
    """Reads a local file, decompressing it first if it ends in ``.gz``."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> bytes:
        if self.path.endswith('.gz'):
            with gzip.open(self.path, 'rb') as f:
                return f.read()
        with open(self.path, 'rb') as f:
            return f.read()

    async def open(self) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read)

    def __repr__(self) -> str:
        return f"FileByteSource({self.path!r})"


class MemoryByteSource(ByteSource):
    """Serves bytes that are already in memory (embedded assets, tests)."""

    def __init__(self, data: bytes):
        self.data = bytes(data)

    async def open(self) -> bytes:
        return self.data


# ============================================================================
# PARSING
# ============================================================================

def _read_header(data: bytes, count: int, what: str) -> Tuple[int, ...]:
    size = 4 * count
    if len(data) < size:
        raise FormatError(
            f"{what} data is {len(data)} bytes, too short for a "
            f"{size}-byte header"
        )
    return struct.unpack(f'>{count}I', data[:size])


def parse_labels(data: bytes, limit: Optional[int] = None) -> Tuple[int, List[int]]:
    """
    Parse a labels buffer.

    Args:
        data: Complete labels file contents
        limit: Read at most this many labels

    Returns:
        tuple: (declared label count, labels actually read)

    Raises:
        FormatError: On a wrong magic number or a truncated buffer
    """
    magic, count = _read_header(data, 2, 'Labels')
    if magic != LABELS_MAGIC_NUMBER:
        raise FormatError(
            f"Invalid magic number: {magic} got from labels data, "
            f"expected {LABELS_MAGIC_NUMBER}"
        )

    to_read = count if limit is None else max(0, min(limit, count))
    if len(data) < LABELS_HEADER_SIZE + to_read:
        raise FormatError(
            f"Labels data is truncated: expected {to_read} labels, "
            f"got {len(data) - LABELS_HEADER_SIZE}"
        )

    if to_read == 0:
        return count, []

    labels = np.frombuffer(
        data, dtype=np.uint8, count=to_read, offset=LABELS_HEADER_SIZE
    )
    return count, [int(label) for label in labels]


def parse_images(
    data: bytes,
    expected_count: int,
    limit: Optional[int] = None
) -> List[List[float]]:
    """
    Parse an images buffer into flat images normalized to ``[0, 1]``.

    Args:
        data: Complete images file contents
        expected_count: Number of labels the images must pair with
        limit: Read at most this many images

    Returns:
        list: One list of ``rows * cols`` floats per image

    Raises:
        FormatError: On a wrong magic number, a count that differs from
            ``expected_count``, or a truncated buffer
    """
    magic, count, rows, cols = _read_header(data, 4, 'Images')
    if magic != IMAGES_MAGIC_NUMBER:
        raise FormatError(
            f"Invalid magic number: {magic} got from images data, "
            f"expected {IMAGES_MAGIC_NUMBER}"
        )
    if count != expected_count:
        raise FormatError(
            f"Images size ({count}) is different from labels size "
            f"({expected_count})"
        )

    to_read = count if limit is None else max(0, min(limit, count))
    pixels_per_image = rows * cols
    needed = to_read * pixels_per_image
    if len(data) < IMAGES_HEADER_SIZE + needed:
        raise FormatError(
            f"Images data is truncated: expected {needed} pixel bytes, "
            f"got {len(data) - IMAGES_HEADER_SIZE}"
        )

    if to_read == 0:
        return []

    pixels = np.frombuffer(
        data, dtype=np.uint8, count=needed, offset=IMAGES_HEADER_SIZE
    )
    images = pixels.reshape(to_read, pixels_per_image) / 255
    return images.tolist()


def _pair(labels: Sequence[int], images: Sequence[List[float]]) -> List[MnistEntry]:
    return [MnistEntry(label, image) for label, image in zip(labels, images)]


def decode_mnist_bytes(
    images_data: bytes,
    labels_data: bytes,
    limit: Optional[int] = None
) -> List[MnistEntry]:
    """
    Decode a labels buffer and an images buffer into labeled samples.

    Args:
        images_data: Complete images file contents
        labels_data: Complete labels file contents
        limit: Maximum number of samples to return

    Returns:
        list: ``MnistEntry`` items in file order, or an empty list if the
        buffers are malformed
    """
    try:
        label_count, labels = parse_labels(labels_data, limit)
        images = parse_images(images_data, label_count, limit)
    except FormatError as e:
        logger.error(f"Could not decode MNIST data: {e}")
        return []

    return _pair(labels, images)


async def decode_mnist(
    images_source: ByteSource,
    labels_source: ByteSource,
    limit: Optional[int] = None
) -> List[MnistEntry]:
    """
    Fetch and decode a labels/images pair.

    The labels are fetched and validated first; the images source is only
    opened once the labels are known to be valid.

    Args:
        images_source: Source of the images file
        labels_source: Source of the labels file
        limit: Maximum number of samples to return

    Returns:
        list: ``MnistEntry`` items, or an empty list on malformed data
    """
    labels_data = await labels_source.open()
    try:
        label_count, labels = parse_labels(labels_data, limit)
    except FormatError as e:
        logger.error(f"Could not decode MNIST labels from {labels_source!r}: {e}")
        return []

    images_data = await images_source.open()
    try:
        images = parse_images(images_data, label_count, limit)
    except FormatError as e:
        logger.error(f"Could not decode MNIST images from {images_source!r}: {e}")
        return []

    entries = _pair(labels, images)
    logger.debug(f"Decoded {len(entries)} MNIST entries")
    return entries


def load_mnist(
    images_path: str,
    labels_path: str,
    limit: Optional[int] = None
) -> List[MnistEntry]:
    """Decode an images/labels file pair from disk."""
    return asyncio.run(decode_mnist(
        FileByteSource(images_path),
        FileByteSource(labels_path),
        limit
    ))


# ============================================================================
# NETWORK INPUT
# ============================================================================

def image_to_matrix(image: Sequence[float]) -> Matrix:
    """Turn a flat image into a ``len(image) x 1`` input column."""
    return Matrix.from_flat_sequence(image, len(image), 1)


def vectorized_result(label: int, classes: int = NUM_CLASSES) -> Matrix:
    """Return a ``classes x 1`` one-hot column with a 1.0 at ``label``."""
    target = Matrix(classes, 1)
    target.set(label, 0, 1.0)
    return target


def find_dataset_file(data_dir: str, name: str) -> str:
    """
    Locate ``name`` in ``data_dir``, falling back to a gzipped copy.

    Raises:
        FileNotFoundError: If neither file exists
    """
    path = os.path.join(data_dir, name)
    if os.path.exists(path):
        return path
    if os.path.exists(path + '.gz'):
        return path + '.gz'
    raise FileNotFoundError(f"MNIST file not found: {path}[.gz]")


def load_data_wrapper(
    data_dir: str = 'data',
    train_limit: Optional[int] = None,
    test_limit: Optional[int] = None
) -> Tuple[List[Tuple[Matrix, Matrix]], List[Tuple[Matrix, int]]]:
    """
    Load the MNIST training and test sets ready for the network.

    Args:
        data_dir: Directory holding the four standard MNIST files
        train_limit: Maximum number of training samples
        test_limit: Maximum number of test samples

    Returns:
        tuple: (training_data, test_data). Training pairs are
        ``(input, one-hot target)``; test pairs are ``(input, label)``.
    """
    train_entries = load_mnist(
        find_dataset_file(data_dir, TRAIN_IMAGES_FILE),
        find_dataset_file(data_dir, TRAIN_LABELS_FILE),
        train_limit
    )
    test_entries = load_mnist(
        find_dataset_file(data_dir, TEST_IMAGES_FILE),
        find_dataset_file(data_dir, TEST_LABELS_FILE),
        test_limit
    )

    training_data = [
        (image_to_matrix(entry.image), vectorized_result(entry.label))
        for entry in train_entries
    ]
    test_data = [
        (image_to_matrix(entry.image), entry.label)
        for entry in test_entries
    ]

    logger.info(
        f"Loaded {len(training_data)} training and {len(test_data)} test samples "
        f"from {data_dir}"
    )
    return training_data, test_data
