"""
Network Layers - From Scratch Implementation
============================================

Core building blocks of the network implemented with NumPy on top of Vol.
Every layer implements:

- forward(v, is_training): remember the input Vol, return a new output Vol
- backward(): read the output gradients, zero and fill the input gradients,
  accumulate into parameter gradients
- params_and_grads(): the learnable buffers for the trainer

Layers implemented here:
- InputLayer: declares the input size, identity
- FullyConnLayer: fully connected dot products
- ConvLayer: 2D convolution (spatial weight sharing)
- PoolLayer: max pooling with recorded switches
- LocalResponseNormalizationLayer: cross-channel normalization
- DropoutLayer: random element dropping during training

Nonlinearities live in activations.py, loss layers in losses.py.
"""

from collections import namedtuple

import numpy as np

from .vol import Vol


ParamsAndGrads = namedtuple('ParamsAndGrads',
                            ['params', 'grads', 'l1_decay_mul', 'l2_decay_mul'])


def _require(layer_def, name, layer_type):
    value = layer_def.get(name)
    if value is None:
        raise ValueError(f"'{layer_type}' layer requires '{name}'")
    return value


def _conv_out_size(in_size, pad, filter_size, stride):
    """
    Spatial output size of a strided window.

    Floor division: when the strided window does not fit the padded input
    exactly, the incomplete final application is trimmed.
    """
    return (in_size + 2 * pad - filter_size) // stride + 1


class Layer:
    """Base class for all layers."""

    layer_type = None

    def __init__(self, out_sx, out_sy, out_depth):
        self.out_sx = out_sx
        self.out_sy = out_sy
        self.out_depth = out_depth

        self.in_act = None
        self.out_act = None

    @classmethod
    def from_def(cls, layer_def, rng):
        """Build the layer from a LayerDef whose input shape is filled in."""
        raise NotImplementedError

    def forward(self, v, is_training=False):
        """Forward pass."""
        raise NotImplementedError

    def backward(self):
        """Backward pass."""
        raise NotImplementedError

    def params_and_grads(self):
        return []

    def __call__(self, v, is_training=False):
        return self.forward(v, is_training)

    def to_dict(self):
        """JSON-compatible record, tagged with layer_type."""
        return {
            'layer_type': self.layer_type,
            'out_sx': self.out_sx,
            'out_sy': self.out_sy,
            'out_depth': self.out_depth,
        }

    @classmethod
    def from_dict(cls, data):
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.out_sx}x{self.out_sy}x{self.out_depth})"


class ShapePreservingLayer(Layer):
    """Layer whose output has the same shape as its input."""

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__(in_sx, in_sy, in_depth)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth)

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'])


class InputLayer(Layer):
    """
    Input layer: declares the size of the input volume.

    Args:
        out_depth: Number of input channels (required)
        out_sx: Input width (default: 1)
        out_sy: Input height (default: 1)
    """

    layer_type = 'input'

    def __init__(self, out_depth, out_sx=1, out_sy=1):
        super().__init__(out_sx, out_sy, out_depth)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(_require(layer_def, 'out_depth', cls.layer_type),
                   out_sx=layer_def.get('out_sx', 1),
                   out_sy=layer_def.get('out_sy', 1))

    def forward(self, v, is_training=False):
        self.in_act = v
        self.out_act = v
        return v

    def backward(self):
        pass

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_depth'], out_sx=data['out_sx'], out_sy=data['out_sy'])


class FullyConnLayer(Layer):
    """
    Fully Connected Layer.

    Each of the `num_neurons` outputs owns a filter Vol with one weight per
    input value:

        out[i] = dot(filter_i, x) + bias_i

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        num_neurons: Number of outputs
        bias_pref: Initial value of every bias (default: 0.0)
        l1_decay_mul: L1 regularization multiplier for the filters (default: 0.0)
        l2_decay_mul: L2 regularization multiplier for the filters (default: 1.0)
        rng: numpy Generator for weight initialization

    Backward:
        dL/dfilter_i = x * g_i
        dL/dbias_i = g_i
        dL/dx = sum_i filter_i * g_i   (the input fans out to every output)
    """

    layer_type = 'fc'

    def __init__(self, in_sx, in_sy, in_depth, num_neurons, bias_pref=0.0,
                 l1_decay_mul=0.0, l2_decay_mul=1.0, rng=None):
        super().__init__(1, 1, num_neurons)

        self.num_inputs = in_sx * in_sy * in_depth
        self.l1_decay_mul = l1_decay_mul
        self.l2_decay_mul = l2_decay_mul

        self.filters = [Vol.random(1, 1, self.num_inputs, rng) for _ in range(num_neurons)]
        self.biases = Vol(1, 1, num_neurons, bias_pref)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   _require(layer_def, 'num_neurons', cls.layer_type),
                   bias_pref=layer_def.get('bias_pref', 0.0),
                   l1_decay_mul=layer_def.get('l1_decay_mul', 0.0),
                   l2_decay_mul=layer_def.get('l2_decay_mul', 1.0),
                   rng=rng)

    def _weights(self):
        # (num_neurons, num_inputs)
        return np.stack([f.w for f in self.filters])

    def forward(self, v, is_training=False):
        self.in_act = v
        a = Vol(1, 1, self.out_depth, 0.0)
        a.w[:] = self._weights() @ v.w + self.biases.w
        self.out_act = a
        return a

    def backward(self):
        v = self.in_act
        chain_grad = self.out_act.dw

        v.dw.fill(0.0)
        v.dw += chain_grad @ self._weights()

        for i, f in enumerate(self.filters):
            f.dw += v.w * chain_grad[i]
        self.biases.dw += chain_grad

    def params_and_grads(self):
        response = [ParamsAndGrads(f.w, f.dw, self.l1_decay_mul, self.l2_decay_mul)
                    for f in self.filters]
        response.append(ParamsAndGrads(self.biases.w, self.biases.dw, 0.0, 0.0))
        return response

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'num_inputs': self.num_inputs,
            'l1_decay_mul': self.l1_decay_mul,
            'l2_decay_mul': self.l2_decay_mul,
            'filters': [f.to_dict() for f in self.filters],
            'biases': self.biases.to_dict(),
        })
        return data

    @classmethod
    def from_dict(cls, data):
        layer = cls(1, 1, data['num_inputs'], data['out_depth'],
                    l1_decay_mul=data.get('l1_decay_mul', 0.0),
                    l2_decay_mul=data.get('l2_decay_mul', 1.0))
        layer.filters = [Vol.from_dict(f) for f in data['filters']]
        layer.biases = Vol.from_dict(data['biases'])
        return layer

    def __repr__(self):
        return f"FullyConnLayer({self.num_inputs}, {self.out_depth})"


class ConvLayer(Layer):
    """
    2D Convolutional Layer.

    Each of the `filters` kernels is a Vol(sx, sy, in_depth) slid over the
    zero-padded input at the given stride (correlation, no kernel flip).

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        filters: Number of kernels (output depth)
        sx: Kernel width
        sy: Kernel height (default: sx)
        stride: Stride of the kernel (default: 1)
        pad: Zero padding around the input borders (default: 0)
        bias_pref: Initial value of every bias (default: 0.0)
        l1_decay_mul, l2_decay_mul: Regularization multipliers for the kernels
        rng: numpy Generator for weight initialization

    Output size per spatial dimension:
        out = (in + 2*pad - size) // stride + 1

    Forward and backward use an im2col patch matrix built from a strided view
    of the padded input, so each pass is a single matrix product.
    """

    layer_type = 'conv'

    def __init__(self, in_sx, in_sy, in_depth, filters, sx, sy=None, stride=1, pad=0,
                 bias_pref=0.0, l1_decay_mul=0.0, l2_decay_mul=1.0, rng=None):
        self.in_sx = in_sx
        self.in_sy = in_sy
        self.in_depth = in_depth
        self.sx = sx
        self.sy = sx if sy is None else sy
        self.stride = stride
        self.pad = pad
        self.l1_decay_mul = l1_decay_mul
        self.l2_decay_mul = l2_decay_mul

        super().__init__(_conv_out_size(in_sx, pad, self.sx, stride),
                         _conv_out_size(in_sy, pad, self.sy, stride),
                         filters)

        self.filters = [Vol.random(self.sx, self.sy, in_depth, rng) for _ in range(filters)]
        self.biases = Vol(1, 1, filters, bias_pref)

        self._col = None

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   _require(layer_def, 'filters', cls.layer_type),
                   _require(layer_def, 'sx', cls.layer_type),
                   sy=layer_def.get('sy'),
                   stride=layer_def.get('stride', 1),
                   pad=layer_def.get('pad', 0),
                   bias_pref=layer_def.get('bias_pref', 0.0),
                   l1_decay_mul=layer_def.get('l1_decay_mul', 0.0),
                   l2_decay_mul=layer_def.get('l2_decay_mul', 1.0),
                   rng=rng)

    def _weights(self):
        # Filter layout (fy, fx, d) flattens in the same order as a patch
        return np.stack([f.w for f in self.filters])

    def _pad_input(self, v):
        x = v.view(v.w)
        if self.pad == 0:
            return np.ascontiguousarray(x)
        p = self.pad
        return np.pad(x, ((p, p), (p, p), (0, 0)), mode='constant')

    def _im2col(self, x_padded):
        """
        Patch matrix of shape (out_sy * out_sx, sy * sx * in_depth).

        Uses numpy stride tricks to view every footprint without copying,
        then reshapes for the matrix multiply.
        """
        s0, s1, s2 = x_padded.strides
        shape = (self.out_sy, self.out_sx, self.sy, self.sx, self.in_depth)
        strides = (s0 * self.stride, s1 * self.stride, s0, s1, s2)
        patches = np.lib.stride_tricks.as_strided(x_padded, shape=shape, strides=strides)
        return patches.reshape(self.out_sy * self.out_sx, -1)

    def forward(self, v, is_training=False):
        self.in_act = v

        self._col = self._im2col(self._pad_input(v))

        # (out_sy * out_sx, out_depth) is exactly the (y, x, d) layout of a Vol
        out = self._col @ self._weights().T + self.biases.w

        a = Vol(self.out_sx, self.out_sy, self.out_depth, 0.0)
        a.w[:] = out.ravel()
        self.out_act = a
        return a

    def backward(self):
        v = self.in_act
        chain_grad = self.out_act.dw.reshape(-1, self.out_depth)
        weights = self._weights()

        # Parameter gradients
        d_weights = chain_grad.T @ self._col
        for f, df in zip(self.filters, d_weights):
            f.dw += df
        self.biases.dw += chain_grad.sum(axis=0)

        # Scatter patch gradients back through every footprint (col2im)
        d_col = (chain_grad @ weights).reshape(
            self.out_sy, self.out_sx, self.sy, self.sx, self.in_depth)
        p = self.pad
        dx_padded = np.zeros((self.in_sy + 2 * p, self.in_sx + 2 * p, self.in_depth))
        y_end = self.stride * (self.out_sy - 1) + 1
        x_end = self.stride * (self.out_sx - 1) + 1
        for fy in range(self.sy):
            for fx in range(self.sx):
                dx_padded[fy:fy + y_end:self.stride, fx:fx + x_end:self.stride] += d_col[:, :, fy, fx]

        v.dw.fill(0.0)
        v.view(v.dw)[:] = dx_padded[p:p + self.in_sy, p:p + self.in_sx]

    def params_and_grads(self):
        response = [ParamsAndGrads(f.w, f.dw, self.l1_decay_mul, self.l2_decay_mul)
                    for f in self.filters]
        response.append(ParamsAndGrads(self.biases.w, self.biases.dw, 0.0, 0.0))
        return response

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'in_sx': self.in_sx,
            'in_sy': self.in_sy,
            'in_depth': self.in_depth,
            'sx': self.sx,
            'sy': self.sy,
            'stride': self.stride,
            'pad': self.pad,
            'l1_decay_mul': self.l1_decay_mul,
            'l2_decay_mul': self.l2_decay_mul,
            'filters': [f.to_dict() for f in self.filters],
            'biases': self.biases.to_dict(),
        })
        return data

    @classmethod
    def from_dict(cls, data):
        layer = cls(data['in_sx'], data['in_sy'], data['in_depth'], data['out_depth'],
                    data['sx'], sy=data['sy'], stride=data['stride'], pad=data['pad'],
                    l1_decay_mul=data.get('l1_decay_mul', 0.0),
                    l2_decay_mul=data.get('l2_decay_mul', 1.0))
        layer.filters = [Vol.from_dict(f) for f in data['filters']]
        layer.biases = Vol.from_dict(data['biases'])
        return layer

    def __repr__(self):
        return (f"ConvLayer({self.in_depth}, {self.out_depth}, "
                f"size={self.sx}x{self.sy}, stride={self.stride}, pad={self.pad})")


class PoolLayer(Layer):
    """
    Max Pooling Layer.

    Downsamples each channel independently by taking the maximum of every
    window. The (x, y) input coordinate of each maximum is recorded in the
    switch tables so backward routes the gradient to exactly that cell.

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        sx: Window width
        sy: Window height (default: sx)
        stride: Stride (default: 2)
        pad: Padding around the borders; padded cells never win (default: 0)

    Ties go to the first maximum in scan order (window x outer, window y inner).
    """

    layer_type = 'pool'

    def __init__(self, in_sx, in_sy, in_depth, sx, sy=None, stride=2, pad=0):
        self.in_sx = in_sx
        self.in_sy = in_sy
        self.sx = sx
        self.sy = sx if sy is None else sy
        self.stride = stride
        self.pad = pad

        super().__init__(_conv_out_size(in_sx, pad, self.sx, stride),
                         _conv_out_size(in_sy, pad, self.sy, stride),
                         in_depth)

        # Where the max came from, for each output neuron
        n = self.out_sx * self.out_sy * self.out_depth
        self.switchx = np.zeros(n, dtype=np.int64)
        self.switchy = np.zeros(n, dtype=np.int64)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   _require(layer_def, 'sx', cls.layer_type),
                   sy=layer_def.get('sy'),
                   stride=layer_def.get('stride', 2),
                   pad=layer_def.get('pad', 0))

    def forward(self, v, is_training=False):
        self.in_act = v
        p = self.pad

        x_padded = np.full((self.in_sy + 2 * p, self.in_sx + 2 * p, self.out_depth), -np.inf)
        x_padded[p:p + self.in_sy, p:p + self.in_sx] = v.view(v.w)

        s0, s1, s2 = x_padded.strides
        shape = (self.out_sy, self.out_sx, self.sy, self.sx, self.out_depth)
        strides = (s0 * self.stride, s1 * self.stride, s0, s1, s2)
        windows = np.lib.stride_tricks.as_strided(x_padded, shape=shape, strides=strides)

        # (out_sy, out_sx, depth, sx * sy) in scan order, argmax keeps the first max
        windows_flat = windows.transpose(0, 1, 4, 3, 2).reshape(
            self.out_sy, self.out_sx, self.out_depth, -1)
        max_indices = np.argmax(windows_flat, axis=-1)
        best = np.take_along_axis(windows_flat, max_indices[..., np.newaxis], axis=-1)[..., 0]

        ay = np.arange(self.out_sy).reshape(-1, 1, 1)
        ax = np.arange(self.out_sx).reshape(1, -1, 1)
        winx = ax * self.stride - p + max_indices // self.sy
        winy = ay * self.stride - p + max_indices % self.sy

        # A window lying entirely in the padding has no winner
        empty = np.isneginf(best)
        if np.any(empty):
            best[empty] = 0.0
            winx[empty] = -1
            winy[empty] = -1

        self.switchx[:] = winx.ravel()
        self.switchy[:] = winy.ravel()

        a = Vol(self.out_sx, self.out_sy, self.out_depth, 0.0)
        a.w[:] = best.ravel()
        self.out_act = a
        return a

    def backward(self):
        # Pooling layers have no parameters, so only the gradient wrt data
        v = self.in_act
        chain_grad = self.out_act.dw

        d_idx = np.tile(np.arange(self.out_depth), self.out_sx * self.out_sy)
        routed = self.switchx >= 0

        v.dw.fill(0.0)
        np.add.at(v.view(v.dw),
                  (self.switchy[routed], self.switchx[routed], d_idx[routed]),
                  chain_grad[routed])

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'in_sx': self.in_sx,
            'in_sy': self.in_sy,
            'in_depth': self.out_depth,
            'sx': self.sx,
            'sy': self.sy,
            'stride': self.stride,
            'pad': self.pad,
        })
        return data

    @classmethod
    def from_dict(cls, data):
        # Switch tables are not persisted, the constructor re-allocates them
        return cls(data['in_sx'], data['in_sy'], data['in_depth'], data['sx'],
                   sy=data['sy'], stride=data['stride'], pad=data['pad'])

    def __repr__(self):
        return f"PoolLayer(size={self.sx}x{self.sy}, stride={self.stride}, pad={self.pad})"


def _window_sum(a, half):
    """Sum over the channel window [i - half, i + half], clipped to valid channels."""
    depth = a.shape[-1]
    csum = np.concatenate([np.zeros(a.shape[:-1] + (1,)), np.cumsum(a, axis=-1)], axis=-1)
    idx = np.arange(depth)
    lo = np.maximum(idx - half, 0)
    hi = np.minimum(idx + half, depth - 1) + 1
    return csum[..., hi] - csum[..., lo]


class LocalResponseNormalizationLayer(ShapePreservingLayer):
    """
    Local Response Normalization across channels.

    For each value a_i at a spatial location, with a window of n adjacent
    channels centered on i (clipped at the borders):

        s_i = k + (alpha / n) * sum_{j in window(i)} a_j^2
        out_i = a_i / s_i^beta

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        k, n, alpha, beta: Normalization constants (n must be odd)

    Backward (quotient rule, summed over every window containing j):
        dx_j = g_j / s_j^beta
               - 2 * beta * (alpha / n) * a_j * sum_{i: j in window(i)} g_i * a_i * s_i^(-beta-1)
    """

    layer_type = 'lrn'

    def __init__(self, in_sx, in_sy, in_depth, k, n, alpha, beta):
        if n % 2 == 0:
            raise ValueError(f"n should be odd for LRN layer, got {n}")

        super().__init__(in_sx, in_sy, in_depth)

        self.k = k
        self.n = n
        self.alpha = alpha
        self.beta = beta

        self._scale = None

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   *(_require(layer_def, name, cls.layer_type)
                     for name in ('k', 'n', 'alpha', 'beta')))

    def forward(self, v, is_training=False):
        self.in_act = v
        a = v.view(v.w)

        # Kept for backprop
        self._scale = self.k + (self.alpha / self.n) * _window_sum(a * a, self.n // 2)

        out = v.clone_and_zero()
        out.view(out.w)[:] = a / self._scale ** self.beta
        self.out_act = out
        return out

    def backward(self):
        v = self.in_act
        a = v.view(v.w)
        s = self._scale
        g = self.out_act.view(self.out_act.dw)

        cross = _window_sum(g * a * s ** (-self.beta - 1), self.n // 2)
        dx = g / s ** self.beta - 2.0 * self.beta * (self.alpha / self.n) * a * cross

        v.dw.fill(0.0)
        v.view(v.dw)[:] = dx

    def to_dict(self):
        data = super().to_dict()
        data.update({'k': self.k, 'n': self.n, 'alpha': self.alpha, 'beta': self.beta})
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'],
                   data['k'], data['n'], data['alpha'], data['beta'])

    def __repr__(self):
        return f"LocalResponseNormalizationLayer(n={self.n}, k={self.k}, alpha={self.alpha}, beta={self.beta})"


class DropoutLayer(ShapePreservingLayer):
    """
    Dropout Layer for regularization.

    During training each value is dropped (zeroed) independently with
    probability `drop_prob` and the drop mask is kept for backward.

    At prediction time every value is multiplied by `drop_prob` (not by the
    keep probability 1 - drop_prob).

    Args:
        in_sx, in_sy, in_depth: Input volume shape
        drop_prob: Probability of dropping a value (default: 0.5)
        rng: numpy Generator for the drop decisions
    """

    layer_type = 'dropout'

    def __init__(self, in_sx, in_sy, in_depth, drop_prob=0.5, rng=None):
        super().__init__(in_sx, in_sy, in_depth)

        self.drop_prob = drop_prob
        self.rng = rng if rng is not None else np.random.default_rng()
        self.dropped = np.zeros(in_sx * in_sy * in_depth, dtype=bool)

    @classmethod
    def from_def(cls, layer_def, rng):
        return cls(layer_def.in_sx, layer_def.in_sy, layer_def.in_depth,
                   drop_prob=layer_def.get('drop_prob', 0.5), rng=rng)

    def forward(self, v, is_training=False):
        self.in_act = v
        out = v.clone()

        if is_training:
            self.dropped[:] = self.rng.random(out.w.size) < self.drop_prob
            out.w[self.dropped] = 0.0
        else:
            out.w *= self.drop_prob

        self.out_act = out
        return out

    def backward(self):
        v = self.in_act
        chain_grad = self.out_act.dw

        v.dw.fill(0.0)
        kept = ~self.dropped
        v.dw[kept] = chain_grad[kept]

    def to_dict(self):
        data = super().to_dict()
        data['drop_prob'] = self.drop_prob
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'],
                   drop_prob=data['drop_prob'])

    def __repr__(self):
        return f"DropoutLayer(drop_prob={self.drop_prob})"
