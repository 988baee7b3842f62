#!/usr/bin/env python3
"""
Train a small network on XOR and round-trip it through a model file.

Usage:
    python scripts/train_xor.py [model_path]

The script will:
1. Initialize a 2-3-1 network
2. Train it for 5000 epochs, reporting accuracy and loss every 1000
3. Save the trained model (default: model.ann)
4. Load the model into a fresh network and print its inferences
"""

import sys

from tinyann import Network
from tinyann.model_io import load_model, save_model

TRAINING_INPUT = [[0, 0], [0, 1], [1, 0], [1, 1]]
TRAINING_OUTPUT = [[1], [0], [0], [1]]

EPOCHS = 5000
LEARNING_RATE = 6.0


def print_inferences(network: Network) -> None:
    """Print the network's output for every training row."""
    for row in TRAINING_INPUT:
        inferred = network.inference(row)[0]
        print(f"   [{row[0]:.1f}, {row[1]:.1f}]: "
              f"{int(inferred >= 0.5)} ({inferred:e})")


def train_and_save(model_path: str) -> None:
    """
    Train XOR and write the model to ``model_path``.

    Parameters:
    -----------
    model_path : str
        Destination of the binary model file
    """
    network = Network(seed=42)
    if network.initialize(2, 1, 3, 1):
        print("❌ Something went wrong initializing the neural network.")
        sys.exit(1)
    print("✅ Done initializing neural network.")

    print("🏋️  Training neural network...")
    for epoch in range(EPOCHS + 1):
        for row, target in zip(TRAINING_INPUT, TRAINING_OUTPUT):
            network.train(LEARNING_RATE, row, target)

        if epoch % 1000 == 0:
            accuracy = network.calculate_accuracy(
                TRAINING_INPUT, TRAINING_OUTPUT, epoch=3
            ) * 100
            loss = network.calculate_loss(
                TRAINING_INPUT, TRAINING_OUTPUT, epoch=3
            ) * 100
            print(f"   Epoch: {epoch:<5} | Accuracy: {accuracy:g}% "
                  f"| Loss: {loss:g}%")

    print("\n🔍 Testing inferences...")
    print_inferences(network)

    error = save_model(network, model_path)
    if error:
        print(f"❌ Could not save model: {error.name}")
        sys.exit(1)
    print(f"\n💾 Saved trained model to: {model_path}")


def load_and_read(model_path: str) -> None:
    """Load the model from ``model_path`` and print its inferences."""
    network, error = load_model(model_path)
    if error:
        print(f"❌ Something went wrong loading the model file: {error.name}")
        sys.exit(1)

    print(f"\n📂 Model loaded successfully from: {model_path}")
    print("🔍 Testing inferences...")
    print_inferences(network)


def main() -> None:
    model_path = sys.argv[1] if len(sys.argv) > 1 else 'model.ann'

    train_and_save(model_path)
    load_and_read(model_path)


if __name__ == '__main__':
    main()
