"""
Trainer
=======

The trainer updates network parameters from the gradients accumulated by
Network.backward. One call to train() processes a single example. Every
`batch_size` calls, the accumulated gradients are averaged, regularized and
applied with the chosen update rule, then zeroed.

Update rules (`method`):
- sgd (default): plain SGD, or SGD with momentum when momentum > 0
- adam: adaptive moment estimation with bias correction
- adagrad: per-parameter rate from the sum of squared gradients
- windowgrad: adagrad over an exponential moving window (ro)
- adadelta: Zeiler's Adadelta, no learning rate needed
- nesterov: Nesterov accelerated momentum

Unknown method names fall back to SGD.

Regularization:
    Each parameter group carries L1/L2 multipliers (biases have 0/0). With
    global l1_decay and l2_decay the per-element penalties are
        l1_decay * l1_mul * |p|    and    l2_decay * l2_mul * p^2 / 2
    and their gradients are added to the raw gradient before averaging.
"""

import logging
from collections import namedtuple

import numpy as np
from tqdm import tqdm

from .labels import as_class_label
from .losses import SoftmaxLayer
from .utils import Window

logger = logging.getLogger(__name__)


TrainingResult = namedtuple('TrainingResult',
                            ['loss', 'cost_loss', 'l1_decay_loss', 'l2_decay_loss'])


# ============================================================================
# Update Rules
# ============================================================================

METHODS = ('sgd', 'adam', 'adagrad', 'windowgrad', 'adadelta', 'nesterov')

# Rules that keep a second accumulator per parameter group
_NEEDS_XSUM = ('adam', 'adadelta')


class Trainer:
    """
    Gradient-based trainer for a Network.

    Args:
        net: Network to train
        learning_rate: Step size (default: 0.01)
        l1_decay: Global L1 regularization strength (default: 0.0)
        l2_decay: Global L2 regularization strength (default: 0.0)
        batch_size: Number of train() calls per update (default: 1)
        method: Update rule, one of METHODS (default: 'sgd')
        momentum: Momentum for sgd and nesterov (default: 0.9)
        ro: Decay rate for windowgrad and adadelta (default: 0.95)
        eps: Conditioning constant for adam, adagrad, windowgrad, adadelta (default: 1e-8)
        beta1: First moment decay for adam (default: 0.9)
        beta2: Second moment decay for adam (default: 0.999)

    Example:
        >>> trainer = Trainer(net, learning_rate=0.01, method='adam')
        >>> result = trainer.train(Vol.from_array([0.5, -1.3]), 0)
        >>> result.loss
    """

    def __init__(self, net, learning_rate=0.01, l1_decay=0.0, l2_decay=0.0, batch_size=1,
                 method='sgd', momentum=0.9, ro=0.95, eps=1e-8, beta1=0.9, beta2=0.999):
        self.net = net
        self.learning_rate = learning_rate
        self.l1_decay = l1_decay
        self.l2_decay = l2_decay
        self.batch_size = batch_size
        self.momentum = momentum
        self.ro = ro
        self.eps = eps
        self.beta1 = beta1
        self.beta2 = beta2

        if method not in METHODS:
            logger.debug("Unknown trainer method %r, using sgd", method)
            method = 'sgd'
        self.method = method

        self.k = 0  # Iteration counter
        self.gsum = []  # Last step or running gradient sums, per parameter group
        self.xsum = []  # Second accumulator for adam and adadelta

    def _init_accumulators(self, pglist):
        # Only vanilla SGD needs no accumulators
        if self.method != 'sgd' or self.momentum > 0.0:
            self.gsum = [np.zeros_like(pg.params) for pg in pglist]
            if self.method in _NEEDS_XSUM:
                self.xsum = [np.zeros_like(pg.params) for pg in pglist]
            else:
                self.xsum = [None] * len(pglist)
        else:
            self.gsum = [None] * len(pglist)
            self.xsum = [None] * len(pglist)

        logger.debug("Allocated %s accumulators for %d parameter groups",
                     self.method, len(pglist))

    def _apply_update(self, p, g, gsum, xsum):
        """Apply one update of the configured rule to p in place."""
        lr = self.learning_rate

        if self.method == 'adam':
            gsum *= self.beta1
            gsum += (1.0 - self.beta1) * g
            xsum *= self.beta2
            xsum += (1.0 - self.beta2) * g * g
            # Bias-corrected moment estimates
            m_hat = gsum / (1.0 - self.beta1 ** self.k)
            v_hat = xsum / (1.0 - self.beta2 ** self.k)
            p -= lr * m_hat / (np.sqrt(v_hat) + self.eps)

        elif self.method == 'adagrad':
            gsum += g * g
            p -= lr / np.sqrt(gsum + self.eps) * g

        elif self.method == 'windowgrad':
            # Adagrad over a moving window, so old gradients are forgotten
            gsum *= self.ro
            gsum += (1.0 - self.ro) * g * g
            p -= lr / np.sqrt(gsum + self.eps) * g

        elif self.method == 'adadelta':
            gsum *= self.ro
            gsum += (1.0 - self.ro) * g * g
            dx = -np.sqrt((xsum + self.eps) / (gsum + self.eps)) * g
            # xsum lags behind gsum by one step
            xsum *= self.ro
            xsum += (1.0 - self.ro) * dx * dx
            p += dx

        elif self.method == 'nesterov':
            prev = gsum.copy()
            gsum *= self.momentum
            gsum += lr * g
            p += self.momentum * prev - (1.0 + self.momentum) * gsum

        elif self.momentum > 0.0:
            dx = self.momentum * gsum - lr * g
            gsum[:] = dx
            p += dx

        else:
            p -= lr * g

    def train(self, x, y):
        """
        Train on a single example.

        Args:
            x: Input Vol
            y: Label for the loss layer (class index, ClassLabel,
                DimensionTarget or VectorTarget)

        Returns:
            TrainingResult. The decay losses are only non-zero on calls that
            perform an update.
        """
        self.net.forward(x, is_training=True)
        cost_loss = self.net.backward(y)

        l1_decay_loss = 0.0
        l2_decay_loss = 0.0

        self.k += 1
        if self.k % self.batch_size == 0:
            pglist = self.net.params_and_grads()

            if not self.gsum:
                self._init_accumulators(pglist)

            for i, pg in enumerate(pglist):
                p, g_raw = pg.params, pg.grads

                l1_decay = self.l1_decay * pg.l1_decay_mul
                l2_decay = self.l2_decay * pg.l2_decay_mul

                l2_decay_loss += float(np.sum(l2_decay * p * p / 2.0))
                l1_decay_loss += float(np.sum(l1_decay * np.abs(p)))

                l1_grad = l1_decay * np.copysign(1.0, p)
                l2_grad = l2_decay * p
                g = (g_raw + l1_grad + l2_grad) / self.batch_size

                self._apply_update(p, g, self.gsum[i], self.xsum[i])

                # Start accumulating anew
                g_raw.fill(0.0)

        return TrainingResult(
            loss=cost_loss + l1_decay_loss + l2_decay_loss,
            cost_loss=cost_loss,
            l1_decay_loss=l1_decay_loss,
            l2_decay_loss=l2_decay_loss,
        )

    def fit(self, xs, ys, epochs=1, shuffle=True, verbose=True, window_size=100, rng=None):
        """
        Train over a dataset for a number of epochs.

        Args:
            xs: Sequence of input Vols
            ys: Sequence of labels, one per input
            epochs: Number of passes over the data
            shuffle: Visit the examples in a new random order every epoch
            verbose: Show a progress bar and log an epoch summary
            window_size: Number of recent examples in the running averages
                shown on the progress bar
            rng: numpy Generator used for shuffling

        Returns:
            History dictionary with the mean 'loss' of every epoch and, for
            softmax networks, the training 'accuracy' of every epoch
        """
        if len(xs) != len(ys):
            raise ValueError(f"Got {len(xs)} inputs but {len(ys)} labels")

        if rng is None:
            rng = np.random.default_rng()

        classifier = isinstance(self.net.layers[-1], SoftmaxLayer)
        history = {'loss': [], 'accuracy': []}

        loss_window = Window(window_size, min_size=1)
        acc_window = Window(window_size, min_size=1)

        for epoch in range(epochs):
            order = rng.permutation(len(xs)) if shuffle else np.arange(len(xs))

            epoch_loss = 0.0
            epoch_correct = 0

            if verbose:
                pbar = tqdm(order, desc=f"Epoch {epoch+1}/{epochs}")
            else:
                pbar = order

            for n, idx in enumerate(pbar, start=1):
                result = self.train(xs[idx], ys[idx])
                epoch_loss += result.loss
                loss_window.add(result.loss)

                if classifier:
                    # Output of the forward pass that preceded this update
                    last = self.net.layers[-1]
                    label = as_class_label(ys[idx], last.layer_type, last.out_depth)
                    correct = float(self.net.prediction() == label.index)
                    epoch_correct += correct
                    acc_window.add(correct)

                if verbose and n % 10 == 0:
                    postfix = {'loss': f'{loss_window.average():.4f}'}
                    if classifier:
                        postfix['acc'] = f'{acc_window.average():.4f}'
                    pbar.set_postfix(postfix)

            avg_loss = epoch_loss / len(xs) if len(xs) else 0.0
            history['loss'].append(avg_loss)

            msg = f"Epoch {epoch+1}/{epochs} - Loss: {avg_loss:.4f}"
            if classifier:
                avg_accuracy = epoch_correct / len(xs) if len(xs) else 0.0
                history['accuracy'].append(avg_accuracy)
                msg += f" - Acc: {avg_accuracy:.4f}"

            if verbose:
                logger.info(msg)

        return history

    def __repr__(self):
        return (f"Trainer(method={self.method!r}, learning_rate={self.learning_rate}, "
                f"batch_size={self.batch_size})")
