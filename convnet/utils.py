"""
Utility Functions
=================

Helpers for monitoring training:
- Window: running average over the last N values (loss, accuracy, ...)
- maxmin: extremes of an array together with their indices
"""

import numpy as np


class Window:
    """
    Keeps the most recent `size` values and returns their average.

    Useful for keeping track of validation or training accuracy during SGD.

    Args:
        size: Number of values kept (default: 100)
        min_size: Number of values needed before average() is meaningful
            (default: 20)

    Example:
        >>> w = Window(3, min_size=2)
        >>> w.add(1.0)
        >>> w.average()
        -1
        >>> w.add(3.0)
        >>> w.average()
        2.0
    """

    def __init__(self, size=100, min_size=20):
        self.size = size
        self.min_size = min_size
        self.values = []
        self.index = 0  # Next slot to overwrite once full

    def add(self, x):
        if len(self.values) < self.size:
            self.values.append(x)
        else:
            self.values[self.index] = x
            self.index = (self.index + 1) % self.size

    def average(self):
        """Mean of the kept values, or -1 while fewer than min_size were added."""
        if len(self.values) < self.min_size:
            return -1
        return sum(self.values) / len(self.values)

    def reset(self):
        self.values = []
        self.index = 0

    def __len__(self):
        return len(self.values)


def maxmin(w):
    """
    Max and min of an array with their indices.

    Args:
        w: 1D array-like

    Returns:
        Tuple (maxi, maxv, mini, minv, dv) with dv = maxv - minv,
        or None for an empty input. Ties resolve to the first index.
    """
    w = np.asarray(w, dtype=np.float64).ravel()
    if w.size == 0:
        return None

    maxi = int(np.argmax(w))
    mini = int(np.argmin(w))
    maxv = float(w[maxi])
    minv = float(w[mini])

    return maxi, maxv, mini, minv, maxv - minv
