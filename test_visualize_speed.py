"""Unit tests for the hysteresis sweep behind the speed band plot."""

import unittest

from test_controller import make_fan
from visualize_speed import hysteresis_sweep


class TestHysteresisSweep(unittest.TestCase):
    """Rising and falling humidity sweeps."""

    def test_rising_sweep(self):
        speeds = hysteresis_sweep(make_fan(), [50, 61, 79, 81])
        self.assertEqual(speeds, ["off", "min", "min", "max"])

    def test_falling_sweep_holds_inside_bands(self):
        speeds = hysteresis_sweep(make_fan(), [85, 75, 71, 70, 58, 56, 55])
        self.assertEqual(speeds, ["max", "max", "max", "min", "min", "min", "off"])


if __name__ == "__main__":
    unittest.main()
