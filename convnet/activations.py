"""
Nonlinearity Layers
===================

Elementwise nonlinearities applied as their own layers in the chain.
Each one computes its output on a fresh Vol and derives the local
derivative in backward from the output values alone:

- ReLU: f(x) = max(0, x), f' = 1 where y > 0
- Sigmoid: f(x) = 1 / (1 + exp(-x)), f' = y * (1 - y)
- Tanh: f(x) = tanh(x), f' = 1 - y^2
- Maxout: max over consecutive channel groups, gradient to the winner only

Mathematical Background:
- Without non-linearities, stacking layers = single linear transformation
- Activations introduce non-linearity, enabling universal function approximation
"""

import numpy as np

from .layers import ShapePreservingLayer, Layer
from .vol import Vol


class ReluLayer(ShapePreservingLayer):
    """
    Rectified Linear Unit: f(x) = max(0, x)

    Derivative:
        f'(x) = 1 if output > 0 else 0
    """

    layer_type = 'relu'

    def forward(self, v, is_training=False):
        self.in_act = v
        out = v.clone()
        np.maximum(out.w, 0.0, out=out.w)
        self.out_act = out
        return out

    def backward(self):
        v = self.in_act
        y = self.out_act

        v.dw.fill(0.0)
        active = y.w > 0
        v.dw[active] = y.dw[active]


class SigmoidLayer(ShapePreservingLayer):
    """
    Sigmoid: f(x) = 1 / (1 + exp(-x)), output in (0, 1).

    Derivative:
        f'(x) = f(x) * (1 - f(x))
    """

    layer_type = 'sigmoid'

    def forward(self, v, is_training=False):
        self.in_act = v
        out = v.clone_and_zero()
        # Clip for numerical stability
        out.w[:] = 1.0 / (1.0 + np.exp(-np.clip(v.w, -500, 500)))
        self.out_act = out
        return out

    def backward(self):
        v = self.in_act
        y = self.out_act

        v.dw.fill(0.0)
        v.dw += y.w * (1.0 - y.w) * y.dw


class TanhLayer(ShapePreservingLayer):
    """
    Hyperbolic Tangent: output in (-1, 1).

    Derivative:
        f'(x) = 1 - tanh(x)^2
    """

    layer_type = 'tanh'

    def forward(self, v, is_training=False):
        self.in_act = v
        out = v.clone_and_zero()
        out.w[:] = np.tanh(v.w)
        self.out_act = out
        return out

    def backward(self):
        v = self.in_act
        y = self.out_act

        v.dw.fill(0.0)
        v.dw += (1.0 - y.w * y.w) * y.dw


class MaxoutLayer(Layer):
    """
    Maxout nonlinearity.

    Splits the channels at every spatial location into consecutive groups of
    `group_size` and outputs the maximum of each group. The index of the
    winning input channel is stored in `switches` for backward.

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        group_size: Channels per group (default: 2), must divide in_depth
    """

    layer_type = 'maxout'

    def __init__(self, in_sx, in_sy, in_depth, group_size=2):
        if group_size <= 0 or in_depth % group_size != 0:
            raise ValueError(
                f"maxout group_size {group_size} must divide the input depth {in_depth}")

        super().__init__(in_sx, in_sy, in_depth // group_size)

        self.group_size = group_size
        self.switches = np.zeros(self.out_sx * self.out_sy * self.out_depth, dtype=np.int64)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   group_size=layer_def.get('group_size', 2))

    def forward(self, v, is_training=False):
        self.in_act = v

        groups = v.w.reshape(-1, self.out_depth, self.group_size)
        winners = np.argmax(groups, axis=-1)

        out = self.out_act = Vol(self.out_sx, self.out_sy, self.out_depth, 0.0)
        out.w[:] = np.take_along_axis(groups, winners[..., np.newaxis], axis=-1).ravel()

        # Input channel of each winner
        base = np.arange(self.out_depth) * self.group_size
        self.switches[:] = (base + winners).ravel()
        return out

    def backward(self):
        v = self.in_act
        chain_grad = self.out_act.dw

        # Flat input index of each winner: (location, channel)
        location = np.repeat(np.arange(self.out_sx * self.out_sy), self.out_depth)
        depth = self.out_depth * self.group_size

        v.dw.fill(0.0)
        v.dw[location * depth + self.switches] = chain_grad

    def to_dict(self):
        data = super().to_dict()
        data['group_size'] = self.group_size
        return data

    @classmethod
    def from_dict(cls, data):
        # Switches are re-allocated by the constructor
        return cls(data['out_sx'], data['out_sy'], data['out_depth'] * data['group_size'],
                   group_size=data['group_size'])

    def __repr__(self):
        return f"MaxoutLayer(group_size={self.group_size})"


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    'relu': ReluLayer,
    'sigmoid': SigmoidLayer,
    'tanh': TanhLayer,
    'maxout': MaxoutLayer,
}


def get_activation(name):
    """
    Get a nonlinearity layer class by name.

    Args:
        name: 'relu', 'sigmoid', 'tanh' or 'maxout'

    Returns:
        Layer class

    Example:
        >>> get_activation('tanh')
        <class 'convnet.activations.TanhLayer'>
    """
    name_lower = name.lower()
    if name_lower not in ACTIVATIONS:
        available = ', '.join(ACTIVATIONS.keys())
        raise ValueError(f"Unknown activation '{name}'. Available: {available}")

    return ACTIVATIONS[name_lower]
