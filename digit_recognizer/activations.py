"""
activations.py
~~~~~~~~~~~~~~

Activation functions used by network layers.

Each activation is a named pair of a whole-matrix transform and its
derivative. Only ReLU (hidden layers) and Softmax (output layer) exist.
"""

import math
from typing import Callable, Dict

from .matrix import Matrix


class ActivationFunction:
    """
    A named activation and its derivative.

    Instances are callable; ``activation(z)`` is the same as
    ``activation.apply(z)``.
    """

    def __init__(
        self,
        name: str,
        apply: Callable[[Matrix], Matrix],
        derivative: Callable[[Matrix], Matrix]
    ):
        self.name = name
        self._apply = apply
        self._derivative = derivative

    def apply(self, m: Matrix) -> Matrix:
        return self._apply(m)

    def derivative(self, m: Matrix) -> Matrix:
        return self._derivative(m)

    def __call__(self, m: Matrix) -> Matrix:
        return self._apply(m)

    def __repr__(self) -> str:
        return f"ActivationFunction({self.name!r})"


def _relu(m: Matrix) -> Matrix:
    result = Matrix(m.m, m.n)
    result.data = [max(v, 0.0) for v in m.data]
    return result


def _relu_derivative(m: Matrix) -> Matrix:
    # The kink at exactly zero counts as inactive
    result = Matrix(m.m, m.n)
    result.data = [1.0 if v > 0 else 0.0 for v in m.data]
    return result


def _exp(value: float) -> float:
    try:
        return math.exp(value)
    except OverflowError:
        return math.inf


def _softmax(m: Matrix) -> Matrix:
    """
    Normalize over every element of the matrix, not per row or column.

    Only meaningful for a single column of class logits. Logits that
    overflow or all underflow produce NaN entries; use
    ``Matrix.any_nan`` to check.
    """
    exps = [_exp(v) for v in m.data]
    total = sum(exps)
    result = Matrix(m.m, m.n)
    if total == 0:
        # Every exponential underflowed
        result.data = [math.nan] * len(exps)
    else:
        result.data = [e / total for e in exps]
    return result


def _softmax_derivative(m: Matrix) -> Matrix:
    # Constant ones: the output gradient in NeuralNetwork.train already
    # stands in for the softmax/cross-entropy pairing.
    return Matrix(m.m, m.n).add(1)


RELU = ActivationFunction('relu', _relu, _relu_derivative)
SOFTMAX = ActivationFunction('softmax', _softmax, _softmax_derivative)

ACTIVATIONS: Dict[str, ActivationFunction] = {
    RELU.name: RELU,
    SOFTMAX.name: SOFTMAX,
}


def get_activation(name: str) -> ActivationFunction:
    """
    Look up an activation function by name (case-insensitive).

    Raises:
        KeyError: If no activation has that name
    """
    try:
        return ACTIVATIONS[name.lower()]
    except KeyError:
        raise KeyError(
            f"Unknown activation '{name}', expected one of {sorted(ACTIVATIONS)}"
        ) from None
