"""
Loss Layers
===========

Layers that implement a loss. These are the layers that start a backward
pass, so one of them must be the final layer of a Network.

Each loss layer implements:
- forward(v, is_training): the network output (probabilities or raw scores)
- backward_loss(y): compute the scalar loss for label y and seed the
  gradient of the input volume

The generic backward() is a no-op for loss layers.
"""

import numpy as np

from .layers import Layer
from .labels import VectorTarget, as_class_label, as_regression_target
from .vol import Vol


class LossLayer(Layer):
    """Base class for loss layers: a 1x1xN output over all input values."""

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__(1, 1, in_sx * in_sy * in_depth)
        self.num_inputs = self.out_depth

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth)

    def backward(self):
        pass

    def backward_loss(self, y):
        """Compute loss for label y and the gradient wrt the input."""
        raise NotImplementedError

    def to_dict(self):
        data = super().to_dict()
        data['num_inputs'] = self.num_inputs
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(1, 1, data['num_inputs'])


class SoftmaxLayer(LossLayer):
    """
    Softmax classifier with N discrete classes from 0 to N-1.

    Exponentiates and normalizes its N inputs into a probability
    distribution.

    Numerical Stability:
        We subtract max(x) before exp to prevent overflow.
        This doesn't change the result: exp(x-c)/sum(exp(x-c)) = exp(x)/sum(exp(x))

    Loss (class negative log likelihood):
        L = -log(p_y)

    Gradient wrt the input scores:
        dL/dx_i = p_i - 1{i == y}
    """

    layer_type = 'softmax'

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__(in_sx, in_sy, in_depth)
        self.num_classes = self.out_depth
        self.es = None

    def forward(self, v, is_training=False):
        self.in_act = v

        exp_x = np.exp(v.w - np.max(v.w))
        self.es = exp_x / np.sum(exp_x)

        a = Vol(1, 1, self.out_depth, 0.0)
        a.w[:] = self.es
        self.out_act = a
        return a

    def backward_loss(self, y):
        y = as_class_label(y, self.layer_type, self.out_depth)
        x = self.in_act

        x.dw.fill(0.0)
        x.dw += self.es
        x.dw[y.index] -= 1.0

        return float(-np.log(self.es[y.index]))


class RegressionLayer(LossLayer):
    """
    L2 regression cost layer.

    Identity forward. Penalizes 0.5 * (x_i - y_i)^2 on the regressed
    dimensions:

    - DimensionTarget(dim, value): only dimension `dim`, every other
      dimension gets zero gradient
    - VectorTarget(values): every dimension

    Gradient:
        dL/dx_i = x_i - y_i
    """

    layer_type = 'regression'

    def forward(self, v, is_training=False):
        self.in_act = v
        self.out_act = v
        return v

    def backward_loss(self, y):
        y = as_regression_target(y, self.layer_type, self.out_depth)
        x = self.in_act

        x.dw.fill(0.0)

        if isinstance(y, VectorTarget):
            target = np.asarray(y.values, dtype=np.float64).ravel()
            if target.size != self.out_depth:
                raise ValueError(
                    f"regression target has {target.size} values, expected {self.out_depth}")
            dy = x.w - target
            x.dw += dy
            return float(0.5 * np.sum(dy * dy))

        dy = x.w[y.dim] - y.value
        x.dw[y.dim] = dy
        return float(0.5 * dy * dy)


class SVMLayer(LossLayer):
    """
    Structured margin (multiclass SVM) loss.

    Identity forward (raw scores). The score of the true class should exceed
    every other score by a margin of 1.0; each violating class i adds

        L += x_i - x_y + margin

    and pushes +1 gradient onto class i and -1 onto the true class.
    """

    layer_type = 'svm'
    margin = 1.0

    def forward(self, v, is_training=False):
        self.in_act = v
        self.out_act = v
        return v

    def backward_loss(self, y):
        y = as_class_label(y, self.layer_type, self.out_depth)
        x = self.in_act

        x.dw.fill(0.0)

        ydiff = x.w - x.w[y.index] + self.margin
        violating = ydiff > 0
        violating[y.index] = False

        x.dw[violating] += 1.0
        x.dw[y.index] -= np.count_nonzero(violating)

        return float(np.sum(ydiff[violating]))
