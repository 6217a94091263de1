"""
Unit tests specifically for Rotary Positional Embeddings (RoPE).

These tests verify the mathematical properties that make RoPE work:
  1. Rotation preserves vector magnitude (isometry)
  2. Relative position encoding: dot products depend on distance
  3. Frequency computation is correct
  4. The half-split pairing (i, i + head_dim/2)
  5. Edge cases: position 0, start offsets, out-of-range positions
"""

import sys
import os
import math

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.errors import CacheOverflowError
from ternary_lm.model import RotaryTable


class TestRotaryTable:
    """Tests for cos/sin precomputation."""

    def test_shape(self):
        rope = RotaryTable(64, 512)
        assert rope.cos.shape == (512, 32)
        assert rope.sin.shape == (512, 32)
        assert rope.cos.dtype == torch.float32

    def test_position_zero(self):
        """At position 0, all angles are 0, so cos=1, sin=0."""
        rope = RotaryTable(64, 512)
        assert torch.allclose(rope.cos[0], torch.ones(32), atol=1e-6)
        assert torch.allclose(rope.sin[0], torch.zeros(32), atol=1e-6)

    def test_angle_formula(self):
        """angle(p, i) = p / theta^(2i / head_dim)."""
        rope = RotaryTable(8, 16, theta=10000.0)
        p, i = 7, 2
        angle = p / (10000.0 ** (2 * i / 8))
        assert math.isclose(rope.cos[p, i].item(), math.cos(angle), abs_tol=1e-6)
        assert math.isclose(rope.sin[p, i].item(), math.sin(angle), abs_tol=1e-6)

    def test_frequencies_decrease(self):
        """Higher pair indices rotate slower."""
        rope = RotaryTable(64, 512, theta=10000.0)
        angles_at_pos1 = torch.atan2(rope.sin[1], rope.cos[1])
        for i in range(len(angles_at_pos1) - 1):
            assert angles_at_pos1[i] >= angles_at_pos1[i + 1] - 1e-6

    def test_different_theta(self):
        rope1 = RotaryTable(64, 512, theta=10000.0)
        rope2 = RotaryTable(64, 512, theta=500000.0)
        assert not torch.allclose(rope1.cos, rope2.cos)

    def test_even_dim_required(self):
        with pytest.raises(ValueError):
            RotaryTable(63, 512)


class TestRotate:
    """Tests for applying the rotation to (seq, heads, head_dim) tensors."""

    def test_output_shape(self):
        rope = RotaryTable(16, 32)
        x = torch.randn(10, 4, 16)
        assert rope.rotate(x).shape == x.shape

    def test_magnitude_preservation(self):
        """Rotation preserves the L2 norm of every head vector."""
        rope = RotaryTable(64, 32)
        x = torch.randn(32, 8, 64)
        x_rot = rope.rotate(x)
        assert torch.allclose(x.norm(dim=-1), x_rot.norm(dim=-1), atol=1e-4)

    def test_identity_at_position_zero(self):
        rope = RotaryTable(64, 32)
        x = torch.randn(1, 3, 64)
        assert torch.allclose(rope.rotate(x, start_pos=0), x, atol=1e-6)

    def test_half_split_pairing(self):
        """Dimension 0 is paired with dimension head_dim/2, not dimension 1."""
        rope = RotaryTable(4, 8)
        x = torch.tensor([[[1.0, 0.0, 0.0, 0.0]]])  # unit vector on dim 0
        out = rope.rotate(x, start_pos=1)[0, 0]
        # Pair 0 has angle 1 rad at position 1: (1, 0) → (cos 1, sin 1) in dims (0, 2)
        assert math.isclose(out[0].item(), math.cos(1.0), abs_tol=1e-6)
        assert math.isclose(out[2].item(), math.sin(1.0), abs_tol=1e-6)
        assert out[1].item() == 0.0
        assert out[3].item() == 0.0

    def test_input_not_modified(self):
        rope = RotaryTable(16, 32)
        x = torch.randn(4, 2, 16)
        before = x.clone()
        rope.rotate(x, start_pos=3)
        assert torch.equal(x, before)

    def test_start_pos_matches_slice(self):
        """Rotating rows at start_pos equals rotating the full sequence and slicing."""
        rope = RotaryTable(16, 32)
        x = torch.randn(10, 2, 16)
        full = rope.rotate(x, start_pos=0)
        tail = rope.rotate(x[6:], start_pos=6)
        assert torch.allclose(full[6:], tail, atol=1e-6)

    def test_relative_distance_invariance(self):
        """
        Core RoPE property: dot(R(q,m), R(k,n)) depends only on (m-n).
        """
        rope = RotaryTable(64, 100)
        q = torch.randn(1, 1, 64)
        k = torch.randn(1, 1, 64)

        dots = []
        relative_distance = 5
        for base_pos in [0, 10, 20, 50, 80]:
            m = base_pos + relative_distance
            n = base_pos
            q_rot = rope.rotate(q, start_pos=m)
            k_rot = rope.rotate(k, start_pos=n)
            dots.append((q_rot * k_rot).sum().item())

        for d in dots:
            assert abs(d - dots[0]) < 1e-3, f"Relative position property violated: dots = {dots}"

    def test_out_of_range_position(self):
        rope = RotaryTable(16, 8)
        with pytest.raises(CacheOverflowError):
            rope.rotate(torch.randn(2, 1, 16), start_pos=7)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
