"""
Visualization Utilities
=======================

This module provides functions for visualizing:
- Training progress (loss/accuracy curves from Trainer.fit)
- Convolutional filters of a ConvLayer
"""

import logging

import numpy as np
import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_training_history(history, figsize=(14, 5), save_path=None, show=True):
    """
    Plot training history (loss and accuracy curves).

    Args:
        history: Dictionary with 'loss' and optionally 'accuracy', as returned
            by Trainer.fit
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show() (default: True)

    Returns:
        The matplotlib Figure
    """
    has_accuracy = bool(history.get('accuracy'))
    n_plots = 2 if has_accuracy else 1

    fig, axes = plt.subplots(1, n_plots, figsize=figsize)
    axes = np.atleast_1d(axes)

    epochs = range(1, len(history['loss']) + 1)

    # Loss plot
    axes[0].plot(epochs, history['loss'], 'b-', label='Training Loss', linewidth=2)
    axes[0].set_xlabel('Epoch', fontsize=12)
    axes[0].set_ylabel('Loss', fontsize=12)
    axes[0].set_title('Training Loss', fontsize=14)
    axes[0].legend(fontsize=10)
    axes[0].grid(True, alpha=0.3)

    # Accuracy plot
    if has_accuracy:
        axes[1].plot(epochs, history['accuracy'], 'b-', label='Training Accuracy', linewidth=2)
        axes[1].set_xlabel('Epoch', fontsize=12)
        axes[1].set_ylabel('Accuracy', fontsize=12)
        axes[1].set_title('Training Accuracy', fontsize=14)
        axes[1].legend(fontsize=10)
        axes[1].grid(True, alpha=0.3)

    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info("Training history plot saved to %s", save_path)

    if show:
        plt.show()
    return fig


def visualize_filters(layer, max_filters=32, figsize=(12, 8), save_path=None, show=True):
    """
    Visualize the kernels of a convolutional layer.

    Args:
        layer: ConvLayer
        max_filters: Maximum number of filters to display
        figsize: Figure size
        save_path: Path to save figure
        show: Call plt.show() (default: True)

    Returns:
        The matplotlib Figure
    """
    n_filters = min(len(layer.filters), max_filters)

    n_cols = int(np.ceil(np.sqrt(n_filters)))
    n_rows = int(np.ceil(n_filters / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=figsize)
    axes = np.array(axes).flatten()

    for i in range(n_filters):
        f = layer.filters[i]

        # For multi-channel filters, average across input channels
        filter_img = np.mean(f.view(f.w), axis=-1)

        # Normalize for visualization
        filter_img = (filter_img - filter_img.min()) / (filter_img.max() - filter_img.min() + 1e-8)

        axes[i].imshow(filter_img, cmap='gray')
        axes[i].set_title(f'Filter {i}', fontsize=8)
        axes[i].axis('off')

    for i in range(n_filters, len(axes)):
        axes[i].axis('off')

    fig.suptitle('Convolutional Filters', fontsize=14)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info("Filters visualization saved to %s", save_path)

    if show:
        plt.show()
    return fig
