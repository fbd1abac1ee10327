"""
Training Labels
===============

The label handed to a loss layer depends on the kind of loss:

- ClassLabel(index): the true class, for softmax and svm layers
- DimensionTarget(dim, value): regress a single output dimension
- VectorTarget(values): regress every output dimension

Each loss layer accepts only its own label kinds and raises TypeError on
anything else, so a class index is never silently read as a target value.
A class index or target dim outside the layer outputs raises ValueError.
"""

from collections import namedtuple

import numpy as np


ClassLabel = namedtuple('ClassLabel', ['index'])
DimensionTarget = namedtuple('DimensionTarget', ['dim', 'value'])
VectorTarget = namedtuple('VectorTarget', ['values'])


def _check_index(value, size, name, layer_type):
    """Validate an integer position in [0, size)."""
    # bool is an int subclass but never an index
    if not isinstance(value, (int, np.integer)) or isinstance(value, (bool, np.bool_)):
        raise TypeError(f"'{layer_type}' layer expects an int {name}, got {value!r}")
    if not 0 <= value < size:
        raise ValueError(
            f"'{layer_type}' layer {name} {value} out of range for {size} outputs")
    return int(value)


def as_class_label(y, layer_type, num_classes):
    """Accept a ClassLabel or a plain int class index below num_classes."""
    if isinstance(y, ClassLabel):
        return ClassLabel(_check_index(y.index, num_classes, 'class index', layer_type))
    if isinstance(y, (int, np.integer)) and not isinstance(y, (bool, np.bool_)):
        return ClassLabel(_check_index(y, num_classes, 'class index', layer_type))
    raise TypeError(
        f"'{layer_type}' layer expects a ClassLabel or int class index, got {y!r}")


def as_regression_target(y, layer_type, out_depth):
    """Accept a DimensionTarget or a VectorTarget."""
    if isinstance(y, DimensionTarget):
        return DimensionTarget(_check_index(y.dim, out_depth, 'dim', layer_type), y.value)
    if isinstance(y, VectorTarget):
        return y
    raise TypeError(
        f"'{layer_type}' layer expects a DimensionTarget or VectorTarget, got {y!r}")
