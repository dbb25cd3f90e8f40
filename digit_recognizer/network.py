"""
network.py
~~~~~~~~~~

A feedforward neural network trained with online gradient descent.

The network owns an ordered list of layers. Each layer holds a weight
matrix (``size x previous size``) and a bias row (``1 x size``).
Neighbouring layers are found by position in that list.

Usage:
    >>> net = NeuralNetwork(784, NetworkOptions(learning_rate=0.1))
    >>> net.add_layer(10, RELU)
    >>> net.add_layer(10, SOFTMAX)
    >>> net.randomize_params(seed=1)
    >>> scores = net.run(image_matrix)
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .activations import ActivationFunction
from .matrix import Matrix

logger = logging.getLogger(__name__)

# Initial weights and biases are drawn uniformly from this range
PARAM_INIT_RANGE = (-0.5, 0.5)


class Layer:
    """One dense layer: its size, activation and parameters."""

    def __init__(self, size: int, activation_function: ActivationFunction):
        self.size = size
        self.activation_function = activation_function
        self.weights: Optional[Matrix] = None
        self.biases: Optional[Matrix] = None

    def __repr__(self) -> str:
        return f"Layer(size={self.size}, activation={self.activation_function.name})"


class NetworkOptions:
    """Training configuration, fixed once the network is built."""

    def __init__(self, learning_rate: float = 0.1):
        if learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {learning_rate}"
            )
        self.learning_rate = learning_rate

    def __repr__(self) -> str:
        return f"NetworkOptions(learning_rate={self.learning_rate})"


class NeuralNetwork:
    """
    Layered network with forward inference and single-sample backprop.

    Args:
        input_size: Number of rows of the input column vector
        options: Training configuration; defaults to ``NetworkOptions()``
    """

    def __init__(self, input_size: int, options: Optional[NetworkOptions] = None):
        if input_size < 1:
            raise ValueError(f"input_size must be positive, got {input_size}")
        self.input_size = input_size
        self.options = options if options is not None else NetworkOptions()
        self._layers: List[Layer] = []

    @property
    def layers(self) -> Tuple[Layer, ...]:
        return tuple(self._layers)

    @property
    def sizes(self) -> List[int]:
        """Input size followed by every layer size."""
        return [self.input_size] + [layer.size for layer in self._layers]

    def previous_layer(self, index: int) -> Optional[Layer]:
        return self._layers[index - 1] if index > 0 else None

    def next_layer(self, index: int) -> Optional[Layer]:
        return self._layers[index + 1] if index + 1 < len(self._layers) else None

    def add_layer(self, size: int, activation_function: ActivationFunction) -> None:
        """Append a layer after the current last one."""
        if size < 1:
            raise ValueError(f"Layer size must be positive, got {size}")
        self._layers.append(Layer(size, activation_function))

    def randomize_params(self, seed: Optional[int] = None) -> None:
        """
        Allocate and randomly initialize every layer's parameters.

        Args:
            seed: Seed for the random generator; the same seed and topology
                always give the same parameters
        """
        rng = np.random.default_rng(seed)
        low, high = PARAM_INIT_RANGE

        for index, layer in enumerate(self._layers):
            previous = self.previous_layer(index)
            fan_in = previous.size if previous is not None else self.input_size

            layer.weights = Matrix(layer.size, fan_in)
            layer.biases = Matrix(1, layer.size)
            layer.weights.fill_random(low, high, rng)
            layer.biases.fill_random(low, high, rng)

        logger.debug(f"Randomized parameters for architecture {self.sizes}")

    def _check_initialized(self) -> None:
        if not self._layers:
            raise RuntimeError("Network has no layers; call add_layer() first")
        for layer in self._layers:
            if layer.weights is None or layer.biases is None:
                raise RuntimeError(
                    "Network parameters are not initialized; "
                    "call randomize_params() first"
                )

    def run(self, input: Matrix) -> Matrix:
        """
        Feed ``input`` forward through every layer.

        Args:
            input: ``input_size x 1`` column vector

        Returns:
            The last layer's activation (one score per class)
        """
        self._check_initialized()
        current = input
        for layer in self._layers:
            z = layer.weights.mul(current).add(layer.biases.transpose())
            current = layer.activation_function(z)
        return current

    def predict(self, input: Matrix) -> int:
        """Return the index of the highest output score."""
        return self.run(input).argmax()

    def train(self, input: Matrix, target: Matrix) -> None:
        """
        Run one gradient-descent step on a single sample.

        Args:
            input: ``input_size x 1`` column vector
            target: Expected output column, same shape as the last layer's
                output
        """
        self._check_initialized()

        # Forward pass, keeping every z and activation
        zs: List[Matrix] = []
        activations: List[Matrix] = [input]
        for index, layer in enumerate(self._layers):
            z = layer.weights.mul(activations[index]).add(layer.biases.transpose())
            zs.append(z)
            activations.append(layer.activation_function(z))

        d_cost_d_a = activations[-1].sub(target).mul(1 / (target.m * target.n))

        learning_rate = self.options.learning_rate
        for index in range(len(self._layers) - 1, -1, -1):
            layer = self._layers[index]

            d_cost_d_b = d_cost_d_a.hadamard(
                layer.activation_function.derivative(zs[index])
            )
            d_cost_d_w = d_cost_d_b.mul(activations[index].transpose())

            # Must use the weights from before this step's update
            d_cost_d_a = layer.weights.transpose().mul(d_cost_d_b)

            layer.weights = layer.weights.sub(d_cost_d_w.mul(learning_rate))
            layer.biases = layer.biases.sub(
                d_cost_d_b.mul(learning_rate).transpose()
            )

    def train_online(
        self,
        training_data: Sequence[Tuple[Matrix, Matrix]],
        epochs: int = 1,
        test_data: Optional[Sequence[Tuple[Matrix, int]]] = None,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None,
        cancel_event: Any = None
    ) -> int:
        """
        Train on every sample in order, one update per sample.

        Args:
            training_data: ``(input, target)`` pairs, visited in order
            epochs: Number of passes over ``training_data``
            test_data: ``(input, label)`` pairs evaluated after each epoch
            callback: Called after each epoch with a progress dict
            yield_func: Called after each sample, e.g. to let other
                greenlets run
            cancel_event: Object with ``is_set()``; checked before every
                sample and stops training as soon as it is set

        Returns:
            int: Number of samples trained on
        """
        samples_seen = 0
        start = time.time()

        for epoch in range(1, epochs + 1):
            for x, y in training_data:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(
                        f"Training cancelled after {samples_seen} samples "
                        f"(epoch {epoch}/{epochs})"
                    )
                    return samples_seen

                self.train(x, y)
                samples_seen += 1

                if yield_func is not None:
                    yield_func()

            progress: Dict[str, Any] = {
                'epoch': epoch,
                'total_epochs': epochs,
                'samples_seen': samples_seen,
                'elapsed_time': time.time() - start,
            }

            if test_data:
                correct = self.evaluate(test_data)
                progress['correct'] = correct
                progress['total'] = len(test_data)
                progress['accuracy'] = correct / len(test_data)
                logger.info(
                    f"Epoch {epoch}/{epochs}: {correct} / {len(test_data)} correct"
                )
            else:
                logger.info(f"Epoch {epoch}/{epochs} complete")

            if callback is not None:
                callback(progress)

        return samples_seen

    def evaluate(self, test_data: Sequence[Tuple[Matrix, int]]) -> int:
        """
        Count the test samples the network classifies correctly.

        Args:
            test_data: ``(input, label)`` pairs

        Returns:
            int: Number of samples whose predicted index equals the label
        """
        return sum(1 for x, label in test_data if self.predict(x) == label)

    def __repr__(self) -> str:
        return (
            f"NeuralNetwork(sizes={self.sizes}, "
            f"learning_rate={self.options.learning_rate})"
        )
