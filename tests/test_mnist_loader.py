"""
test_mnist_loader.py
~~~~~~~~~~~~~~~~~~~~

Unit tests for the MNIST IDX decoder and dataset helpers.
"""

import asyncio
import gzip
import logging
import os
import struct
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from digit_recognizer import mnist_loader
from digit_recognizer.mnist_loader import (
    ByteSource,
    FileByteSource,
    MemoryByteSource,
    MnistEntry,
    decode_mnist,
    decode_mnist_bytes,
    find_dataset_file,
    image_to_matrix,
    load_data_wrapper,
    load_mnist,
    vectorized_result,
)


def labels_bytes(labels, magic=2049, count=None):
    count = len(labels) if count is None else count
    return struct.pack('>II', magic, count) + bytes(labels)


def images_bytes(pixels, count, rows, cols, magic=2051):
    return struct.pack('>IIII', magic, count, rows, cols) + bytes(pixels)


def decode(images, labels, limit=None):
    return asyncio.run(decode_mnist(
        MemoryByteSource(images), MemoryByteSource(labels), limit
    ))


class FailingSource(ByteSource):
    """A source whose transport always fails."""

    def __init__(self):
        self.opened = False

    async def open(self) -> bytes:
        self.opened = True
        raise ConnectionError("network unreachable")


@pytest.fixture
def two_samples():
    """Images and labels buffers holding two 2x2 images."""
    labels = labels_bytes([3, 7])
    images = images_bytes([255, 0, 0, 255, 0, 0, 0, 0], count=2, rows=2, cols=2)
    return images, labels


@pytest.fixture
def mnist_dir(tmp_path):
    """A directory with tiny train (gzipped) and test (plain) IDX files."""
    train_images = images_bytes([0, 51, 102, 255] * 3, count=3, rows=2, cols=2)
    train_labels = labels_bytes([1, 0, 2])
    test_images = images_bytes([255, 255, 0, 0] * 2, count=2, rows=2, cols=2)
    test_labels = labels_bytes([4, 9])

    with gzip.open(tmp_path / (mnist_loader.TRAIN_IMAGES_FILE + '.gz'), 'wb') as f:
        f.write(train_images)
    with gzip.open(tmp_path / (mnist_loader.TRAIN_LABELS_FILE + '.gz'), 'wb') as f:
        f.write(train_labels)
    (tmp_path / mnist_loader.TEST_IMAGES_FILE).write_bytes(test_images)
    (tmp_path / mnist_loader.TEST_LABELS_FILE).write_bytes(test_labels)
    return str(tmp_path)


@pytest.mark.unit
class TestDecoding:
    """Test decoding of well-formed and malformed streams."""

    def test_decodes_pairs(self, two_samples):
        """Test labels pair with normalized images in order."""
        entries = decode(*two_samples)
        assert entries == [
            MnistEntry(label=3, image=[1.0, 0.0, 0.0, 1.0]),
            MnistEntry(label=7, image=[0.0, 0.0, 0.0, 0.0]),
        ]
        assert entries[0].label == 3
        assert all(isinstance(v, float) for v in entries[0].image)

    def test_sync_decoder_matches(self, two_samples):
        """Test the synchronous decoder gives the same result."""
        assert decode_mnist_bytes(*two_samples) == decode(*two_samples)

    def test_pixels_normalized(self):
        """Test that bytes are divided by 255."""
        entries = decode(images_bytes([0, 51, 255], 1, 1, 3), labels_bytes([5]))
        assert entries[0].image == pytest.approx([0.0, 0.2, 1.0])

    def test_limit_truncates(self, two_samples):
        """Test that the result is cut to the requested size."""
        entries = decode(*two_samples, limit=1)
        assert entries == [MnistEntry(3, [1.0, 0.0, 0.0, 1.0])]
        assert decode(*two_samples, limit=10) == decode(*two_samples)
        assert decode(*two_samples, limit=0) == []

    def test_negative_limit_reads_nothing(self, two_samples):
        """Test that a negative limit behaves like a limit of zero."""
        assert decode(*two_samples, limit=-1) == []
        assert decode(*two_samples, limit=-5) == []
        assert decode_mnist_bytes(*two_samples, limit=-2) == []

    def test_wrong_labels_magic(self, two_samples, caplog):
        """Test that a bad labels magic number yields an empty result."""
        images, _ = two_samples
        with caplog.at_level(logging.ERROR, logger='digit_recognizer.mnist_loader'):
            assert decode(images, labels_bytes([3, 7], magic=1234)) == []
        assert 'Invalid magic number: 1234' in caplog.text

    def test_wrong_labels_magic_skips_images(self):
        """Test that images are not fetched once the labels are invalid."""
        images = FailingSource()
        entries = asyncio.run(decode_mnist(
            images, MemoryByteSource(labels_bytes([1], magic=1234))
        ))
        assert entries == []
        assert images.opened is False

    def test_wrong_images_magic(self, two_samples):
        """Test that a bad images magic number yields an empty result."""
        _, labels = two_samples
        images = images_bytes([0] * 8, count=2, rows=2, cols=2, magic=2049)
        assert decode(images, labels) == []

    def test_count_mismatch(self, caplog):
        """Test that differing image and label counts yield an empty result."""
        images = images_bytes([0] * 12, count=3, rows=2, cols=2)
        with caplog.at_level(logging.ERROR, logger='digit_recognizer.mnist_loader'):
            assert decode(images, labels_bytes([1, 2])) == []
        assert 'different from labels size' in caplog.text

    def test_truncated_buffers(self):
        """Test that short buffers decode to an empty result."""
        assert decode(images_bytes([0] * 3, 1, 2, 2), labels_bytes([1])) == []
        assert decode(images_bytes([0] * 4, 1, 2, 2), b'\x00\x00\x08') == []
        assert decode(images_bytes([0] * 8, 2, 2, 2), labels_bytes([1], count=2)) == []

    def test_transport_errors_propagate(self, two_samples):
        """Test that a failing byte source is not swallowed."""
        _, labels = two_samples
        with pytest.raises(ConnectionError):
            asyncio.run(decode_mnist(FailingSource(), MemoryByteSource(labels)))


@pytest.mark.unit
class TestHelpers:
    """Test conversion helpers and file sources."""

    def test_image_to_matrix(self):
        """Test that images become input columns."""
        m = image_to_matrix([0.0, 0.5, 1.0, 0.25])
        assert m.shape == (4, 1)
        assert m.tolist() == [0.0, 0.5, 1.0, 0.25]

    def test_vectorized_result(self):
        """Test one-hot targets."""
        target = vectorized_result(7)
        assert target.shape == (10, 1)
        assert target.argmax() == 7
        assert sum(target.data) == 1.0

    def test_vectorized_result_out_of_range(self):
        """Test that labels outside the classes are rejected."""
        with pytest.raises(IndexError):
            vectorized_result(10)

    def test_file_source_reads_plain_and_gzip(self, tmp_path):
        """Test that file sources return the file contents."""
        plain = tmp_path / 'plain.bin'
        plain.write_bytes(b'\x01\x02')
        packed = tmp_path / 'packed.bin.gz'
        with gzip.open(packed, 'wb') as f:
            f.write(b'\x03\x04')

        assert asyncio.run(FileByteSource(str(plain)).open()) == b'\x01\x02'
        assert asyncio.run(FileByteSource(str(packed)).open()) == b'\x03\x04'

    def test_missing_file_raises(self, tmp_path):
        """Test that a missing file is a transport error."""
        with pytest.raises(FileNotFoundError):
            load_mnist(str(tmp_path / 'a'), str(tmp_path / 'b'))

    def test_find_dataset_file(self, mnist_dir):
        """Test lookup of plain and gzipped files."""
        assert find_dataset_file(mnist_dir, mnist_loader.TEST_IMAGES_FILE).endswith('ubyte')
        assert find_dataset_file(mnist_dir, mnist_loader.TRAIN_IMAGES_FILE).endswith('.gz')
        with pytest.raises(FileNotFoundError):
            find_dataset_file(mnist_dir, 'missing')


@pytest.mark.integration
class TestLoadDataWrapper:
    """Test loading a full dataset directory."""

    def test_load_data_wrapper(self, mnist_dir):
        """Test training and test pairs are ready for the network."""
        training_data, test_data = load_data_wrapper(mnist_dir)

        assert len(training_data) == 3
        assert len(test_data) == 2

        x, y = training_data[0]
        assert x.shape == (4, 1)
        assert x.tolist() == pytest.approx([0.0, 0.2, 0.4, 1.0])
        assert y.shape == (10, 1)
        assert y.argmax() == 1

        x, label = test_data[1]
        assert label == 9
        assert x.tolist() == [1.0, 1.0, 0.0, 0.0]

    def test_load_data_wrapper_limits(self, mnist_dir):
        """Test the sample limits."""
        training_data, test_data = load_data_wrapper(mnist_dir, train_limit=2, test_limit=1)
        assert len(training_data) == 2
        assert len(test_data) == 1
