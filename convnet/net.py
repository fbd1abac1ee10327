"""
Network - Main Class
====================

This is the main class that ties everything together:
- Layer definitions and their desugaring
- Layer construction with shape propagation
- Forward pass
- Backward pass (backpropagation)
- Parameter/gradient collection for the trainer
- Saving/loading

Constraints:
    The layers form a simple linear chain. The first layer is an input layer,
    the last layer is a loss layer (softmax, regression or svm).

Example:
    >>> net = Network([
    ...     {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
    ...     {'type': 'fc', 'num_neurons': 5, 'activation': 'tanh'},
    ...     {'type': 'softmax', 'num_classes': 3},
    ... ])
    >>> probs = net.forward(Vol.from_array([0.2, -0.3]))
"""

import json
import logging

import numpy as np

from .activations import MaxoutLayer, ReluLayer, SigmoidLayer, TanhLayer, get_activation
from .layers import (ConvLayer, DropoutLayer, FullyConnLayer, InputLayer,
                     LocalResponseNormalizationLayer, PoolLayer)
from .losses import LossLayer, RegressionLayer, SoftmaxLayer, SVMLayer

logger = logging.getLogger(__name__)


# Every layer kind, keyed by its layer_type tag. Used both to build layers
# from definitions and to rebuild them from saved records.
LAYER_TYPES = {
    'input': InputLayer,
    'fc': FullyConnLayer,
    'conv': ConvLayer,
    'pool': PoolLayer,
    'lrn': LocalResponseNormalizationLayer,
    'dropout': DropoutLayer,
    'relu': ReluLayer,
    'sigmoid': SigmoidLayer,
    'tanh': TanhLayer,
    'maxout': MaxoutLayer,
    'softmax': SoftmaxLayer,
    'regression': RegressionLayer,
    'svm': SVMLayer,
}


def get_layer_class(layer_type):
    """Get a layer class by its layer_type tag."""
    if layer_type not in LAYER_TYPES:
        available = ', '.join(LAYER_TYPES.keys())
        raise ValueError(f"Unknown layer type '{layer_type}'. Available: {available}")

    return LAYER_TYPES[layer_type]


class LayerDef:
    """
    Configuration record for one layer.

    Args:
        type: Layer type tag ('input', 'fc', 'conv', ...)
        **fields: Hyperparameters. Anything not given is None and the layer
            applies its own default.

    Fields:
        num_neurons, num_classes, bias_pref, activation, group_size,
        drop_prob, in_sx, in_sy, in_depth, out_sx, out_sy, out_depth,
        l1_decay_mul, l2_decay_mul, sx, sy, pad, stride, filters,
        k, n, alpha, beta
    """

    FIELDS = (
        'num_neurons', 'num_classes', 'bias_pref', 'activation', 'group_size',
        'drop_prob', 'in_sx', 'in_sy', 'in_depth', 'out_sx', 'out_sy', 'out_depth',
        'l1_decay_mul', 'l2_decay_mul', 'sx', 'sy', 'pad', 'stride', 'filters',
        'k', 'n', 'alpha', 'beta',
    )

    def __init__(self, type, **fields):
        unknown = set(fields) - set(self.FIELDS)
        if unknown:
            raise ValueError(f"Unknown layer definition fields for '{type}': {sorted(unknown)}")

        self.type = type
        for name in self.FIELDS:
            setattr(self, name, fields.get(name))

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        if 'type' not in data:
            raise ValueError(f"Layer definition without a 'type': {data}")
        return cls(data.pop('type'), **data)

    def get(self, name, default=None):
        value = getattr(self, name)
        return default if value is None else value

    def fields(self):
        return {name: getattr(self, name) for name in self.FIELDS
                if getattr(self, name) is not None}

    def replace(self, **changes):
        """Copy of this definition with some fields changed."""
        fields = self.fields()
        fields.update(changes)
        return LayerDef(self.type, **fields)

    def __repr__(self):
        args = ', '.join(f"{k}={v!r}" for k, v in self.fields().items())
        return f"LayerDef({self.type!r}{', ' if args else ''}{args})"


def desugar(defs):
    """
    Expand shorthand definitions.

    - softmax/svm get a preceding fc layer with num_classes neurons
    - regression gets a preceding fc layer with num_neurons neurons
    - fc/conv without bias_pref get 0.0, or 0.1 in front of a relu
    - an 'activation' field appends the matching nonlinearity layer
    - a non-zero drop_prob appends a dropout layer
    """
    new_defs = []
    for d in defs:
        if d.type in ('softmax', 'svm'):
            if d.num_classes is None:
                raise ValueError(f"'{d.type}' layer requires 'num_classes'")
            new_defs.append(LayerDef('fc', num_neurons=d.num_classes))

        if d.type == 'regression':
            if d.num_neurons is None:
                raise ValueError("'regression' layer requires 'num_neurons'")
            new_defs.append(LayerDef('fc', num_neurons=d.num_neurons))

        if d.activation is not None:
            d = d.replace(activation=d.activation.lower())

        if d.type in ('fc', 'conv') and d.bias_pref is None:
            d = d.replace(bias_pref=0.1 if d.activation == 'relu' else 0.0)

        new_defs.append(d)

        if d.activation is not None:
            activation = get_activation(d.activation)
            if activation is MaxoutLayer:
                new_defs.append(LayerDef('maxout', group_size=d.get('group_size', 2)))
            else:
                new_defs.append(LayerDef(activation.layer_type))

        if d.drop_prob and d.type != 'dropout':
            new_defs.append(LayerDef('dropout', drop_prob=d.drop_prob))

    return new_defs


def _takes_input_from(layer, prev):
    """Whether the recorded input size of layer matches the output of prev."""
    shape = (prev.out_sx, prev.out_sy, prev.out_depth)

    if isinstance(layer, InputLayer):
        return False
    if isinstance(layer, (FullyConnLayer, LossLayer)):
        return layer.num_inputs == prev.out_sx * prev.out_sy * prev.out_depth
    if isinstance(layer, ConvLayer):
        return (layer.in_sx, layer.in_sy, layer.in_depth) == shape
    if isinstance(layer, PoolLayer):
        return (layer.in_sx, layer.in_sy, layer.out_depth) == shape
    if isinstance(layer, MaxoutLayer):
        return (layer.out_sx, layer.out_sy, layer.out_depth * layer.group_size) == shape
    return (layer.out_sx, layer.out_sy, layer.out_depth) == shape


class Network:
    """
    Feed-forward network: a linear chain of layers.

    Args:
        layer_defs: Optional list of LayerDef (or dicts) to build right away
        rng: numpy Generator for weight initialization and dropout
    """

    def __init__(self, layer_defs=None, rng=None):
        self.layers = []

        if layer_defs is not None:
            self.make_layers(layer_defs, rng=rng)

    def make_layers(self, layer_defs, rng=None):
        """
        Create the layer objects from a list of layer definitions.

        Each layer after the first takes its input shape from the output
        shape of the layer before it.
        """
        defs = [d if isinstance(d, LayerDef) else LayerDef.from_dict(d) for d in layer_defs]

        if len(defs) < 2:
            raise ValueError("At least one input layer and one loss layer are required")
        if defs[0].type != 'input':
            raise ValueError(
                f"First layer must be the input layer, to declare size of inputs; got '{defs[0].type}'")

        if rng is None:
            rng = np.random.default_rng()

        defs = desugar(defs)
        logger.debug("Desugared layer definitions: %s", defs)

        layers = []
        for d in defs:
            if layers:
                prev = layers[-1]
                d = d.replace(in_sx=prev.out_sx, in_sy=prev.out_sy, in_depth=prev.out_depth)
            layers.append(get_layer_class(d.type).from_def(d, rng))

        if not isinstance(layers[-1], LossLayer):
            raise ValueError(
                f"Last layer must be a loss layer (softmax, regression, svm); got '{layers[-1].layer_type}'")

        self.layers = layers

    def forward(self, v, is_training=False):
        """
        Forward pass through the network.

        The trainer passes is_training=True. Called from outside it defaults
        to prediction mode.

        Returns:
            Output Vol of the final layer
        """
        act = v
        for layer in self.layers:
            act = layer.forward(act, is_training)
        return act

    def cost_loss(self, v, y):
        """Loss for input v and label y, in prediction mode."""
        self.forward(v, is_training=False)
        return self.layers[-1].backward_loss(y)

    def backward(self, y):
        """
        Backward pass through the network.

        The loss layer computes the loss and seeds the gradients, every other
        layer then backpropagates in reverse order.

        Returns:
            Cost loss
        """
        loss = self.layers[-1].backward_loss(y)
        for layer in reversed(self.layers[:-1]):
            layer.backward()
        return loss

    def params_and_grads(self):
        """Parameters and gradients of every layer, in layer order."""
        response = []
        for layer in self.layers:
            response.extend(layer.params_and_grads())
        return response

    def prediction(self):
        """
        Argmax class of the last forward pass.

        Only valid when the last layer is a softmax classifier.
        """
        last = self.layers[-1] if self.layers else None
        if not isinstance(last, SoftmaxLayer):
            raise ValueError("prediction() assumes softmax as the last layer of the net")
        if last.out_act is None:
            raise ValueError("prediction() called before any forward pass")

        return int(np.argmax(last.out_act.w))

    def summary(self):
        """Model summary as a string."""
        lines = []
        lines.append("=" * 70)
        lines.append(f"{'Layer':<45} {'Output Shape':<14} {'Params':<10}")
        lines.append("=" * 70)

        total_params = 0
        for i, layer in enumerate(self.layers):
            n_params = sum(pg.params.size for pg in layer.params_and_grads())
            total_params += n_params
            shape = f"{layer.out_sx}x{layer.out_sy}x{layer.out_depth}"
            lines.append(f"{i:3d}. {str(layer):<40} {shape:<14} {n_params:,}")

        lines.append("-" * 70)
        lines.append(f"Total trainable parameters: {total_params:,}")
        lines.append("=" * 70)

        return '\n'.join(lines)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self):
        return {'layers': [layer.to_dict() for layer in self.layers]}

    @classmethod
    def from_dict(cls, data):
        """Rebuild a network from the record produced by to_dict()."""
        net = cls()
        for record in data['layers']:
            if 'layer_type' not in record:
                raise ValueError(f"Layer record without a 'layer_type': {sorted(record)}")
            net.layers.append(get_layer_class(record['layer_type']).from_dict(record))

        if len(net.layers) < 2:
            raise ValueError("Saved network needs at least an input layer and a loss layer")
        if not isinstance(net.layers[0], InputLayer):
            raise ValueError(
                f"Saved network does not start with an input layer; got '{net.layers[0].layer_type}'")
        if not isinstance(net.layers[-1], LossLayer):
            raise ValueError("Saved network does not end with a loss layer")

        for i in range(1, len(net.layers)):
            prev, layer = net.layers[i - 1], net.layers[i]
            if not _takes_input_from(layer, prev):
                raise ValueError(
                    f"Saved layer {i} ('{layer.layer_type}') does not fit the "
                    f"{prev.out_sx}x{prev.out_sy}x{prev.out_depth} output of layer {i - 1}")

        return net

    def save(self, filepath):
        """
        Save network to a JSON file.

        Args:
            filepath: Path to save file (.json)
        """
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f)
        logger.info("Network saved to %s", filepath)

    @classmethod
    def load(cls, filepath):
        """
        Load network from a JSON file.

        Args:
            filepath: Path to saved network (.json)
        """
        with open(filepath) as f:
            net = cls.from_dict(json.load(f))
        logger.info("Network loaded from %s", filepath)
        return net

    def __repr__(self):
        return f"Network(layers={len(self.layers)})"
