"""
convnet - Volume-based Neural Networks
======================================

A small automatic-differentiation engine for feed-forward neural networks
using only NumPy. This library covers:
- Vol: 3D volumes of values and gradients
- Fully connected, convolution, max pooling, local response normalization
  and dropout layers
- ReLU, Sigmoid, Tanh and Maxout nonlinearities
- Softmax, regression and SVM losses
- A Trainer with SGD/momentum, Adam, Adagrad, Windowgrad, Adadelta and Nesterov
"""

from .vol import Vol
from .labels import ClassLabel, DimensionTarget, VectorTarget
from .layers import InputLayer, FullyConnLayer, ConvLayer, PoolLayer
from .layers import LocalResponseNormalizationLayer, DropoutLayer, ParamsAndGrads
from .activations import ReluLayer, SigmoidLayer, TanhLayer, MaxoutLayer, get_activation
from .losses import SoftmaxLayer, RegressionLayer, SVMLayer
from .net import Network, LayerDef, LAYER_TYPES, get_layer_class
from .optimizers import Trainer, TrainingResult, METHODS
from .utils import Window, maxmin
from . import visualizations

__version__ = "1.0.0"
__all__ = [
    # Data
    'Vol', 'ClassLabel', 'DimensionTarget', 'VectorTarget',
    # Layers
    'InputLayer', 'FullyConnLayer', 'ConvLayer', 'PoolLayer',
    'LocalResponseNormalizationLayer', 'DropoutLayer', 'ParamsAndGrads',
    # Nonlinearities
    'ReluLayer', 'SigmoidLayer', 'TanhLayer', 'MaxoutLayer', 'get_activation',
    # Losses
    'SoftmaxLayer', 'RegressionLayer', 'SVMLayer',
    # Network
    'Network', 'LayerDef', 'LAYER_TYPES', 'get_layer_class',
    # Training
    'Trainer', 'TrainingResult', 'METHODS',
    # Utilities
    'Window', 'maxmin',
]
