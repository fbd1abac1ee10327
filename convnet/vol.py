"""
Vol - The Basic Data Container
==============================

A Vol is a 3D volume of numbers with a width (sx), height (sy) and depth.
It holds the data for every activation, every filter and every bias in a
network, together with the gradients of the loss w.r.t. that data.

Memory layout:
    Values and gradients are two flat float64 arrays of length sx * sy * depth.
    Addressing is row-major with the channel varying fastest:

        index(x, y, d) = (sx * y + x) * depth + d

    so `w.reshape(sy, sx, depth)` is a zero-copy (y, x, d) view, which the
    layers use for vectorized NumPy math.

Gradients are never cleared implicitly. A layer zeroes the `dw` of its input
volume before filling it during backward.
"""

import numpy as np


class Vol:
    """
    3D volume of values (w) and gradients (dw).

    Args:
        sx: Width
        sy: Height
        depth: Number of channels
        c: Constant to fill the values with (default: 0.0)

    Example:
        >>> v = Vol(2, 2, 3, 1.0)
        >>> v.get(1, 0, 2)
        1.0
    """

    def __init__(self, sx, sy, depth, c=0.0):
        self.sx = sx
        self.sy = sy
        self.depth = depth

        n = sx * sy * depth
        self.w = np.full(n, c, dtype=np.float64)
        self.dw = np.zeros(n, dtype=np.float64)

    @classmethod
    def random(cls, sx, sy, depth, rng=None):
        """
        Volume filled with normal draws scaled by 1/sqrt(fan-in).

        Weight normalization equalizes the output variance of every neuron,
        otherwise neurons with many incoming connections produce outputs of
        larger variance.
        """
        if rng is None:
            rng = np.random.default_rng()

        v = cls(sx, sy, depth)
        scale = np.sqrt(1.0 / (sx * sy * depth))
        v.w[:] = rng.standard_normal(v.w.size) * scale
        return v

    @classmethod
    def from_array(cls, values):
        """Create a 1x1xN volume holding a copy of `values`."""
        values = np.asarray(values, dtype=np.float64).ravel()
        v = cls(1, 1, values.size)
        v.w[:] = values
        return v

    # ------------------------------------------------------------------
    # Indexed access
    # ------------------------------------------------------------------

    def index(self, x, y, d):
        return (self.sx * y + x) * self.depth + d

    def get(self, x, y, d):
        return self.w[self.index(x, y, d)]

    def set(self, x, y, d, value):
        self.w[self.index(x, y, d)] = value

    def add(self, x, y, d, value):
        self.w[self.index(x, y, d)] += value

    def get_grad(self, x, y, d):
        return self.dw[self.index(x, y, d)]

    def set_grad(self, x, y, d, value):
        self.dw[self.index(x, y, d)] = value

    def add_grad(self, x, y, d, value):
        self.dw[self.index(x, y, d)] += value

    def view(self, buffer):
        """Reshape one of this volume's buffers to a (y, x, d) view."""
        return buffer.reshape(self.sy, self.sx, self.depth)

    # ------------------------------------------------------------------
    # Copies and accumulation
    # ------------------------------------------------------------------

    def clone_and_zero(self):
        return Vol(self.sx, self.sy, self.depth, 0.0)

    def clone(self):
        """Copy of the values with fresh zero gradients."""
        v = Vol(self.sx, self.sy, self.depth)
        v.w[:] = self.w
        return v

    def add_from(self, other):
        self.w += other.w

    def add_from_scaled(self, other, a):
        self.w += a * other.w

    def set_const(self, a):
        self.w.fill(a)

    # ------------------------------------------------------------------
    # Augmentation
    # ------------------------------------------------------------------

    def augment(self, crop, dx=None, dy=None, fliplr=False, rng=None):
        """
        Crop a `crop x crop` window and optionally flip it left<->right.

        Args:
            crop: Side length of the (square) output
            dx, dy: Offset of the window in this volume. Random in
                [0, size - crop) when omitted.
            fliplr: Mirror the result horizontally
            rng: numpy Generator used for random offsets

        Returns:
            A new Vol, or this Vol itself when neither crop nor flip applies.
            Cells of the window that fall outside this volume are 0.
        """
        if rng is None:
            rng = np.random.default_rng()
        if dx is None:
            dx = int(rng.integers(0, max(self.sx - crop, 1)))
        if dy is None:
            dy = int(rng.integers(0, max(self.sy - crop, 1)))

        if crop != self.sx or dx != 0 or dy != 0:
            out = Vol(crop, crop, self.depth, 0.0)
            src = self.view(self.w)
            dst = out.view(out.w)

            x0, x1 = max(0, dx), min(self.sx, dx + crop)
            y0, y1 = max(0, dy), min(self.sy, dy + crop)
            if x0 < x1 and y0 < y1:
                dst[y0 - dy:y1 - dy, x0 - dx:x1 - dx] = src[y0:y1, x0:x1]
        else:
            out = self

        if fliplr:
            flipped = out.clone_and_zero()
            flipped.view(flipped.w)[:] = out.view(out.w)[:, ::-1, :]
            out = flipped

        return out

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self):
        """JSON-compatible record of shape and values (gradients are not kept)."""
        return {
            'sx': self.sx,
            'sy': self.sy,
            'depth': self.depth,
            'w': self.w.tolist(),
        }

    @classmethod
    def from_dict(cls, data):
        v = cls(data['sx'], data['sy'], data['depth'])
        v.w[:] = np.asarray(data['w'], dtype=np.float64)
        return v

    def __len__(self):
        return self.w.size

    def __repr__(self):
        return f"Vol(sx={self.sx}, sy={self.sy}, depth={self.depth})"
