#!/usr/bin/env python3
"""
Train a digit recognizer on the MNIST IDX files and report test accuracy.

Usage:
    python scripts/train_mnist.py --data-dir data --hidden-neurons 10

The script will:
1. Decode the training and test IDX files (plain or .gz)
2. Build a 784 -> hidden (ReLU) -> 10 (Softmax) network
3. Train it one sample at a time
4. Print the accuracy on the test set after every epoch
"""

import os
import sys
import argparse
import logging

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from digit_recognizer import mnist_loader
from digit_recognizer.activations import RELU, SOFTMAX
from digit_recognizer.network import NeuralNetwork, NetworkOptions


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Train an MNIST digit recognizer')
    parser.add_argument('--data-dir', type=str, default='data',
                        help='directory with the MNIST IDX files (default: data)')
    parser.add_argument('--hidden-neurons', type=int, default=10, metavar='N',
                        help='neurons in the hidden layer (default: 10)')
    parser.add_argument('--learning-rate', type=float, default=0.1, metavar='LR',
                        help='learning rate (default: 0.1)')
    parser.add_argument('--epochs', type=int, default=1, metavar='N',
                        help='passes over the training set (default: 1)')
    parser.add_argument('--train-limit', type=int, default=None, metavar='N',
                        help='use at most N training samples')
    parser.add_argument('--test-limit', type=int, default=None, metavar='N',
                        help='use at most N test samples')
    parser.add_argument('--seed', type=int, default=None, metavar='S',
                        help='seed for parameter initialization')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main training function."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("MNIST Digit Recognizer")
    print("=" * 60)

    print(f"📂 Loading MNIST data from: {args.data_dir}")
    try:
        training_data, test_data = mnist_loader.load_data_wrapper(
            args.data_dir, args.train_limit, args.test_limit
        )
    except FileNotFoundError as e:
        print(f"❌ Error: {e}")
        return 1

    if not training_data:
        print("❌ Error: no training samples could be decoded")
        return 1

    net = NeuralNetwork(
        training_data[0][0].m,
        NetworkOptions(learning_rate=args.learning_rate)
    )
    net.add_layer(args.hidden_neurons, RELU)
    net.add_layer(mnist_loader.NUM_CLASSES, SOFTMAX)
    net.randomize_params(seed=args.seed)

    print(f"\n🧠 Training network {net.sizes} on {len(training_data)} samples "
          f"(epochs: {args.epochs}, lr: {args.learning_rate})")

    def report(progress):
        if 'accuracy' in progress:
            print(f"   - Epoch {progress['epoch']}/{progress['total_epochs']}: "
                  f"{progress['correct']} / {progress['total']} "
                  f"({progress['accuracy']:.2%}) in {progress['elapsed_time']:.1f}s")
        else:
            print(f"   - Epoch {progress['epoch']}/{progress['total_epochs']} "
                  f"done in {progress['elapsed_time']:.1f}s")

    try:
        net.train_online(training_data, args.epochs, test_data=test_data,
                         callback=report)
    except KeyboardInterrupt:
        print("\n⚠️  Training interrupted")
        return 130

    if test_data:
        accuracy = net.evaluate(test_data) / len(test_data)
        print(f"\n✅ Tested accuracy: {accuracy:.2%}")

        scores = net.run(test_data[0][0])
        print(f"   First test sample: label {test_data[0][1]}, "
              f"predicted {scores.argmax()}, "
              f"confidence {np.max(scores.tolist()):.2f}")
    else:
        print("\n⚠️  No test samples; accuracy not measured")

    return 0


if __name__ == '__main__':
    sys.exit(main())
