"""
matrix.py
~~~~~~~~~

Dense row-major matrix with the small algebra the network needs.

Every algebraic operation returns a new Matrix; only ``set`` and
``fill_random`` modify a matrix in place.
"""

import math
from typing import Callable, Iterable, List, Optional, Tuple, Union

import numpy as np

Scalar = Union[int, float]


class DimensionMismatchError(ValueError):
    """Raised when two matrices have incompatible shapes for an operation."""

    def __init__(self, left_shape: Tuple[int, int], right_shape: Tuple[int, int]):
        self.left_shape = left_shape
        self.right_shape = right_shape
        super().__init__(
            f"Matrix dimensions do not match "
            f"(this: {left_shape[0]}x{left_shape[1]}, "
            f"that: {right_shape[0]}x{right_shape[1]})"
        )


def _format_value(value: float) -> str:
    """Render a value the way a plain number literal would look."""
    if math.isnan(value):
        return 'NaN'
    if math.isinf(value):
        return 'Infinity' if value > 0 else '-Infinity'
    if value.is_integer():
        return str(int(value))
    return repr(value)


class Matrix:
    """
    An ``m x n`` matrix of floats stored as a flat list in row-major order.
    """

    def __init__(self, m: int, n: int):
        """
        Create an ``m x n`` matrix filled with zeros.

        Args:
            m: Number of rows
            n: Number of columns

        Raises:
            ValueError: If either dimension is not a positive integer
        """
        if not isinstance(m, int) or not isinstance(n, int) or m < 1 or n < 1:
            raise ValueError(
                f"Matrix dimensions must be positive integers, got {m}x{n}"
            )
        self.m = m
        self.n = n
        self.data: List[float] = [0.0] * (m * n)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.m, self.n

    def _index(self, i: int, j: int) -> int:
        if not 0 <= i < self.m or not 0 <= j < self.n:
            raise IndexError(
                f"Index ({i}, {j}) out of range for {self.m}x{self.n} matrix"
            )
        return i * self.n + j

    def get(self, i: int, j: int) -> float:
        return self.data[self._index(i, j)]

    def set(self, i: int, j: int, value: Scalar) -> None:
        self.data[self._index(i, j)] = float(value)

    def fill_random(
        self,
        low: float,
        high: float,
        rng: Optional[np.random.Generator] = None
    ) -> None:
        """
        Overwrite every element with a uniform draw from ``[low, high)``.

        Args:
            low: Lower bound (inclusive)
            high: Upper bound (exclusive)
            rng: Random generator to draw from; a fresh one is used if omitted
        """
        if rng is None:
            rng = np.random.default_rng()
        self.data = [float(v) for v in rng.uniform(low, high, self.m * self.n)]

    def _check_same_shape(self, other: 'Matrix') -> None:
        if self.m != other.m or self.n != other.n:
            raise DimensionMismatchError(self.shape, other.shape)

    def _map(self, func: Callable[[float], float]) -> 'Matrix':
        result = Matrix(self.m, self.n)
        result.data = [func(v) for v in self.data]
        return result

    def _zip(
        self,
        other: 'Matrix',
        func: Callable[[float, float], float]
    ) -> 'Matrix':
        self._check_same_shape(other)
        result = Matrix(self.m, self.n)
        result.data = [func(a, b) for a, b in zip(self.data, other.data)]
        return result

    def mul(self, multiplicand: Union['Matrix', Scalar]) -> 'Matrix':
        """
        Multiply by a scalar (elementwise) or by another matrix.

        Args:
            multiplicand: Scalar, or a matrix with as many rows as this
                matrix has columns

        Returns:
            A new matrix with the product

        Raises:
            DimensionMismatchError: If ``self.n != multiplicand.m``
        """
        if not isinstance(multiplicand, Matrix):
            return self._map(lambda v: v * multiplicand)

        if self.n != multiplicand.m:
            raise DimensionMismatchError(self.shape, multiplicand.shape)

        other = multiplicand.data
        p = multiplicand.n
        result = Matrix(self.m, p)
        for i in range(self.m):
            row = self.data[i * self.n:(i + 1) * self.n]
            for j in range(p):
                total = 0.0
                for k in range(self.n):
                    total += row[k] * other[k * p + j]
                result.data[i * p + j] = total
        return result

    def add(self, addend: Union['Matrix', Scalar]) -> 'Matrix':
        """Add a scalar to every element, or add a same-shaped matrix."""
        if isinstance(addend, Matrix):
            return self._zip(addend, lambda a, b: a + b)
        return self._map(lambda v: v + addend)

    def sub(self, subtrahend: Union['Matrix', Scalar]) -> 'Matrix':
        """Subtract a scalar from every element, or a same-shaped matrix."""
        if isinstance(subtrahend, Matrix):
            return self._zip(subtrahend, lambda a, b: a - b)
        return self._map(lambda v: v - subtrahend)

    def hadamard(self, other: 'Matrix') -> 'Matrix':
        """Elementwise product of two matrices with identical shape."""
        return self._zip(other, lambda a, b: a * b)

    def transpose(self) -> 'Matrix':
        result = Matrix(self.n, self.m)
        for i in range(self.m):
            for j in range(self.n):
                result.data[j * self.m + i] = self.data[i * self.n + j]
        return result

    def argmax(self) -> int:
        """
        Return the row index of the largest element.

        Elements are scanned in row-major order and the row of every new
        maximum is recorded, so on a single column this is the index of the
        largest value. Ties keep the first occurrence.
        """
        best = self.data[0]
        best_row = 0
        for i in range(self.m):
            for j in range(self.n):
                value = self.data[i * self.n + j]
                if value > best:
                    best = value
                    best_row = i
        return best_row

    def any_nan(self) -> bool:
        return any(math.isnan(v) for v in self.data)

    def to_serialized_string(self) -> str:
        """Render all elements as ``[a,b,...]`` in storage order."""
        return '[' + ','.join(_format_value(float(v)) for v in self.data) + ']'

    def tolist(self) -> List[float]:
        return list(self.data)

    @classmethod
    def from_flat_sequence(
        cls,
        values: Iterable[Scalar],
        m: int,
        n: int
    ) -> 'Matrix':
        """
        Build an ``m x n`` matrix from a flat row-major sequence.

        Args:
            values: At least ``m * n`` numbers; extra values are ignored
            m: Number of rows
            n: Number of columns

        Returns:
            The new matrix

        Raises:
            ValueError: If fewer than ``m * n`` values are supplied
        """
        matrix = cls(m, n)
        flat = [float(v) for v in values]
        if len(flat) < m * n:
            raise ValueError(
                f"Expected at least {m * n} values for a {m}x{n} matrix, "
                f"got {len(flat)}"
            )
        matrix.data = flat[:m * n]
        return matrix

    @classmethod
    def filling(
        cls,
        generator: Callable[[int, int], Scalar],
        m: int,
        n: int
    ) -> 'Matrix':
        """Build an ``m x n`` matrix where element ``(i, j)`` is ``generator(i, j)``."""
        matrix = cls(m, n)
        for i in range(m):
            for j in range(n):
                matrix.data[i * n + j] = float(generator(i, j))
        return matrix

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and self.data == other.data

    def __repr__(self) -> str:
        return f"Matrix({self.m}x{self.n}, {self.to_serialized_string()})"
