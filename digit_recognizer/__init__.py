"""
digit_recognizer package
~~~~~~~~~~~~~~~~~~~~~~~~

Handwritten digit recognition with a neural network written from scratch.
Contains the matrix engine, activation functions, the network, the MNIST
IDX decoder, and the API server.
"""

__version__ = "1.0.0"
