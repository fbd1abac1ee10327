"""
Integration Tests for Network
=============================

End-to-end tests for layer definitions, desugaring, the Network class and
saving/loading.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from convnet.vol import Vol
from convnet.net import Network, LayerDef, desugar, get_layer_class, LAYER_TYPES
from convnet.layers import FullyConnLayer, ConvLayer, PoolLayer, DropoutLayer
from convnet.activations import TanhLayer, ReluLayer, MaxoutLayer
from convnet.losses import SoftmaxLayer, RegressionLayer, SVMLayer
from convnet.labels import ClassLabel, VectorTarget
from convnet.optimizers import Trainer


def make_test_net(rng=None):
    """2 inputs, two tanh fc layers of width 5, 3-class softmax."""
    return Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'fc', 'num_neurons': 5, 'activation': 'tanh'},
        {'type': 'fc', 'num_neurons': 5, 'activation': 'tanh'},
        {'type': 'softmax', 'num_classes': 3},
    ], rng=rng if rng is not None else np.random.default_rng(42))


def make_conv_net(rng=None):
    return Network([
        LayerDef('input', out_sx=8, out_sy=8, out_depth=1),
        LayerDef('conv', sx=3, filters=4, stride=1, pad=1, activation='relu'),
        LayerDef('pool', sx=2, stride=2),
        LayerDef('lrn', k=1.0, n=3, alpha=1e-4, beta=0.75),
        LayerDef('fc', num_neurons=6, activation='sigmoid', drop_prob=0.2),
        LayerDef('softmax', num_classes=3),
    ], rng=rng if rng is not None else np.random.default_rng(0))


class TestLayerDef:
    """Tests for LayerDef."""

    def test_defaults_are_none(self):
        d = LayerDef('fc', num_neurons=3)
        assert d.type == 'fc'
        assert d.num_neurons == 3
        assert d.bias_pref is None
        assert d.get('bias_pref', 0.5) == 0.5
        assert d.get('num_neurons', 10) == 3

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="neurons"):
            LayerDef('fc', neurons=3)

    def test_from_dict(self):
        d = LayerDef.from_dict({'type': 'conv', 'sx': 5, 'filters': 16})
        assert (d.type, d.sx, d.filters) == ('conv', 5, 16)

        with pytest.raises(ValueError, match="type"):
            LayerDef.from_dict({'sx': 5})

    def test_replace(self):
        d = LayerDef('fc', num_neurons=3)
        e = d.replace(in_depth=4)
        assert e.in_depth == 4
        assert e.num_neurons == 3
        assert d.in_depth is None


class TestDesugar:
    """Tests for definition desugaring."""

    def test_softmax_gets_fc(self):
        defs = desugar([LayerDef('input', out_depth=2), LayerDef('softmax', num_classes=3)])
        assert [d.type for d in defs] == ['input', 'fc', 'softmax']
        assert defs[1].num_neurons == 3

    def test_svm_gets_fc(self):
        defs = desugar([LayerDef('svm', num_classes=4)])
        assert [d.type for d in defs] == ['fc', 'svm']
        assert defs[0].num_neurons == 4

    def test_regression_gets_fc(self):
        defs = desugar([LayerDef('regression', num_neurons=2)])
        assert [d.type for d in defs] == ['fc', 'regression']
        assert defs[0].num_neurons == 2

    def test_bias_pref_defaults(self):
        defs = desugar([
            LayerDef('fc', num_neurons=3, activation='relu'),
            LayerDef('conv', sx=3, filters=2),
            LayerDef('fc', num_neurons=3, bias_pref=0.7, activation='relu'),
        ])
        assert defs[0].bias_pref == 0.1
        assert defs[2].bias_pref == 0.0
        assert defs[3].bias_pref == 0.7

    def test_activation_name_case(self):
        defs = desugar([LayerDef('fc', num_neurons=3, activation='ReLU')])
        assert defs[0].bias_pref == 0.1
        assert defs[0].activation == 'relu'
        assert defs[1].type == 'relu'

    def test_activation_layers(self):
        defs = desugar([
            LayerDef('fc', num_neurons=4, activation='sigmoid'),
            LayerDef('fc', num_neurons=4, activation='maxout'),
            LayerDef('fc', num_neurons=6, activation='maxout', group_size=3),
        ])
        assert [d.type for d in defs] == ['fc', 'sigmoid', 'fc', 'maxout', 'fc', 'maxout']
        assert defs[3].group_size == 2
        assert defs[5].group_size == 3

    def test_dropout_inserted(self):
        defs = desugar([LayerDef('fc', num_neurons=4, activation='tanh', drop_prob=0.5)])
        assert [d.type for d in defs] == ['fc', 'tanh', 'dropout']
        assert defs[2].drop_prob == 0.5

    def test_explicit_dropout_not_duplicated(self):
        defs = desugar([LayerDef('dropout', drop_prob=0.5)])
        assert [d.type for d in defs] == ['dropout']

    def test_unknown_activation(self):
        with pytest.raises(ValueError, match="Unknown activation"):
            desugar([LayerDef('fc', num_neurons=4, activation='swish')])

    def test_softmax_requires_num_classes(self):
        with pytest.raises(ValueError, match="num_classes"):
            desugar([LayerDef('softmax')])


class TestNetworkConstruction:
    """Tests for Network.make_layers."""

    def test_desugared_layer_count(self):
        net = make_test_net()
        types = [layer.layer_type for layer in net.layers]
        assert types == ['input', 'fc', 'tanh', 'fc', 'tanh', 'fc', 'softmax']
        assert len(net.layers) == 7

    def test_shapes_propagate(self):
        net = make_conv_net()
        conv, pool = net.layers[1], net.layers[3]

        assert isinstance(conv, ConvLayer)
        assert (conv.out_sx, conv.out_sy, conv.out_depth) == (8, 8, 4)
        assert isinstance(net.layers[2], ReluLayer)
        assert isinstance(pool, PoolLayer)
        assert (pool.out_sx, pool.out_sy, pool.out_depth) == (4, 4, 4)
        assert net.layers[5].num_inputs == 64
        assert any(isinstance(layer, DropoutLayer) for layer in net.layers)
        assert net.layers[-1].out_depth == 3

    def test_relu_bias_pref(self):
        net = make_conv_net()
        np.testing.assert_array_equal(net.layers[1].biases.w, 0.1)

    def test_relu_bias_pref_any_case(self):
        net = Network([
            {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
            {'type': 'fc', 'num_neurons': 3, 'activation': 'ReLU'},
            {'type': 'softmax', 'num_classes': 2},
        ], rng=np.random.default_rng(0))
        assert isinstance(net.layers[2], ReluLayer)
        np.testing.assert_array_equal(net.layers[1].biases.w, 0.1)

    def test_too_few_layers(self):
        with pytest.raises(ValueError, match="At least one"):
            Network([{'type': 'input', 'out_depth': 2}])

    def test_first_layer_must_be_input(self):
        with pytest.raises(ValueError, match="input"):
            Network([
                {'type': 'fc', 'num_neurons': 2},
                {'type': 'softmax', 'num_classes': 2},
            ])

    def test_last_layer_must_be_loss(self):
        with pytest.raises(ValueError, match="loss layer"):
            Network([
                {'type': 'input', 'out_depth': 2},
                {'type': 'fc', 'num_neurons': 2, 'activation': 'relu'},
            ])

    def test_unknown_layer_type(self):
        with pytest.raises(ValueError, match="Unknown layer type"):
            Network([
                {'type': 'input', 'out_depth': 2},
                {'type': 'batchnorm'},
                {'type': 'softmax', 'num_classes': 2},
            ])

    def test_missing_required_field(self):
        with pytest.raises(ValueError, match="filters"):
            Network([
                {'type': 'input', 'out_sx': 4, 'out_sy': 4, 'out_depth': 1},
                {'type': 'conv', 'sx': 3},
                {'type': 'softmax', 'num_classes': 2},
            ])

    def test_maxout_depth_mismatch(self):
        with pytest.raises(ValueError, match="group_size"):
            Network([
                {'type': 'input', 'out_depth': 2},
                {'type': 'fc', 'num_neurons': 5, 'activation': 'maxout'},
                {'type': 'softmax', 'num_classes': 2},
            ])

    def test_registry(self):
        assert set(LAYER_TYPES) == {'input', 'fc', 'conv', 'pool', 'lrn', 'dropout',
                                    'relu', 'sigmoid', 'tanh', 'maxout',
                                    'softmax', 'regression', 'svm'}
        for layer_type, cls in LAYER_TYPES.items():
            assert cls.layer_type == layer_type
        assert get_layer_class('fc') is FullyConnLayer


class TestNetworkForward:
    """Tests for the forward pass and predictions."""

    def test_probabilities(self):
        net = make_test_net()
        out = net.forward(Vol.from_array([0.2, -0.3]))

        assert out.w.size == 3
        assert np.all((out.w > 0) & (out.w < 1))
        assert abs(np.sum(out.w) - 1.0) < 1e-4

    def test_conv_net_probabilities(self):
        net = make_conv_net()
        x = Vol.random(8, 8, 1, np.random.default_rng(1))
        out = net.forward(x)
        assert abs(np.sum(out.w) - 1.0) < 1e-4

    def test_prediction(self):
        net = make_test_net()
        out = net.forward(Vol.from_array([0.2, -0.3]))
        assert net.prediction() == int(np.argmax(out.w))

    def test_prediction_requires_softmax(self):
        net = Network([
            {'type': 'input', 'out_depth': 2},
            {'type': 'svm', 'num_classes': 3},
        ])
        net.forward(Vol.from_array([0.2, -0.3]))
        with pytest.raises(ValueError, match="softmax"):
            net.prediction()

    def test_prediction_before_forward(self):
        with pytest.raises(ValueError):
            make_test_net().prediction()

    def test_cost_loss(self):
        net = make_test_net()
        x = Vol.from_array([0.2, -0.3])
        probs = net.forward(x).w.copy()
        assert net.cost_loss(x, 1) == pytest.approx(-np.log(probs[1]))

    def test_params_and_grads(self):
        net = make_test_net()
        pgs = net.params_and_grads()
        # Three fc layers: 5 + 5 + 3 neurons, one bias group each
        assert len(pgs) == 5 + 1 + 5 + 1 + 3 + 1
        assert sum(pg.params.size for pg in pgs) == (2 * 5 + 5) + (5 * 5 + 5) + (5 * 3 + 3)

    def test_summary(self):
        summary = make_test_net().summary()
        assert "Total trainable parameters: 63" in summary
        assert "FullyConnLayer" in summary


class TestNetworkTraining:
    """The trained class becomes more probable."""

    def test_training_increases_probability(self):
        rng = np.random.default_rng(0)
        net = make_test_net(rng)
        trainer = Trainer(net, learning_rate=0.0001, momentum=0.0, batch_size=1,
                          l2_decay=0.0)

        for _ in range(100):
            x = Vol.from_array(rng.random(2) * 2 - 1)
            label = int(rng.integers(0, 3))

            before = net.forward(x).w[label]
            trainer.train(x, label)
            after = net.forward(x).w[label]

            assert after > before

    def test_regression_training_reduces_loss(self):
        net = Network([
            {'type': 'input', 'out_depth': 2},
            {'type': 'fc', 'num_neurons': 8, 'activation': 'tanh'},
            {'type': 'regression', 'num_neurons': 1},
        ], rng=np.random.default_rng(0))
        trainer = Trainer(net, learning_rate=0.01, momentum=0.9)

        x = Vol.from_array([0.5, -0.5])
        y = VectorTarget([0.8])
        first = trainer.train(x, y).cost_loss
        for _ in range(200):
            last = trainer.train(x, y).cost_loss
        assert last < first


class TestNetworkSerialization:
    """Tests for saving and loading."""

    def test_roundtrip_outputs(self, tmp_path):
        net = make_conv_net()
        x = Vol.random(8, 8, 1, np.random.default_rng(5))
        expected = net.forward(x).w.copy()

        path = tmp_path / "net.json"
        net.save(path)
        loaded = Network.load(path)

        assert [l.layer_type for l in loaded.layers] == [l.layer_type for l in net.layers]
        np.testing.assert_allclose(loaded.forward(x).w, expected)

    def test_roundtrip_rebuilds_switches(self):
        net = make_conv_net()
        loaded = Network.from_dict(net.to_dict())

        pool = loaded.layers[3]
        assert isinstance(pool, PoolLayer)
        assert pool.switchx.size == pool.out_sx * pool.out_sy * pool.out_depth

        x = Vol.random(8, 8, 1, np.random.default_rng(2))
        loaded.forward(x, is_training=True)
        loss = loaded.backward(0)
        assert np.isfinite(loss)

    def test_roundtrip_every_layer_kind(self):
        net = Network([
            {'type': 'input', 'out_sx': 4, 'out_sy': 4, 'out_depth': 2},
            {'type': 'conv', 'sx': 3, 'filters': 4, 'pad': 1, 'activation': 'tanh'},
            {'type': 'lrn', 'k': 2.0, 'n': 3, 'alpha': 0.1, 'beta': 0.5},
            {'type': 'fc', 'num_neurons': 4, 'activation': 'maxout', 'group_size': 2,
             'l1_decay_mul': 0.3},
            {'type': 'dropout', 'drop_prob': 0.25},
            {'type': 'regression', 'num_neurons': 2},
        ], rng=np.random.default_rng(1))

        loaded = Network.from_dict(net.to_dict())

        assert isinstance(loaded.layers[-1], RegressionLayer)
        maxout = [l for l in loaded.layers if isinstance(l, MaxoutLayer)][0]
        assert maxout.group_size == 2
        dropout = [l for l in loaded.layers if isinstance(l, DropoutLayer)][0]
        assert dropout.drop_prob == 0.25
        fc = [l for l in loaded.layers if isinstance(l, FullyConnLayer)][0]
        assert fc.l1_decay_mul == 0.3

        x = Vol.random(4, 4, 2, np.random.default_rng(3))
        np.testing.assert_allclose(loaded.forward(x).w, net.forward(x).w)

    def test_unknown_record(self):
        with pytest.raises(ValueError, match="Unknown layer type"):
            Network.from_dict({'layers': [{'layer_type': 'mystery'}]})

    def test_record_without_loss(self):
        record = make_test_net().to_dict()
        record['layers'] = record['layers'][:-1]
        with pytest.raises(ValueError, match="loss layer"):
            Network.from_dict(record)

    def test_record_without_input(self):
        record = make_test_net().to_dict()
        record['layers'] = record['layers'][1:]
        with pytest.raises(ValueError, match="input layer"):
            Network.from_dict(record)

    def test_record_too_short(self):
        record = make_test_net().to_dict()
        record['layers'] = record['layers'][:1]
        with pytest.raises(ValueError, match="at least"):
            Network.from_dict(record)

    def test_record_shapes_must_chain(self):
        record = make_conv_net().to_dict()
        # Without the pool layer the 8x8x4 relu output feeds a 4x4x4 lrn
        assert record['layers'][3]['layer_type'] == 'pool'
        del record['layers'][3]
        with pytest.raises(ValueError, match="does not fit"):
            Network.from_dict(record)

    def test_record_fc_input_mismatch(self):
        record = make_test_net().to_dict()
        fc = record['layers'][1]
        assert fc['layer_type'] == 'fc'
        fc['num_inputs'] = 3
        fc['filters'] = [Vol(1, 1, 3).to_dict() for _ in fc['filters']]
        with pytest.raises(ValueError, match="layer 1"):
            Network.from_dict(record)
