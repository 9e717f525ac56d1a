"""Visualize the humidity hysteresis of each configured fan."""

from datetime import datetime, UTC

import matplotlib.pyplot as plt
import numpy as np
from config import FanConfig, load_config
from controller import decide_fan_speed, SPEED_RANK
from state import FanStatus, Reading

# Far in the past so the minimum run time never holds a speed
_LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)


def hysteresis_sweep(fan: FanConfig, humidities):
    """
    Walk the humidity values in order and record the resulting fan speed.

    The fan runs in auto mode without trigger lights, carrying its speed from
    one step to the next, so a rising sweep followed by a falling one shows
    the hysteresis bands.
    """
    now = datetime.now(UTC)
    status = FanStatus(control=Reading("auto"), speed=Reading("off", _LONG_AGO))
    speeds = []

    for humidity in humidities:
        decision = decide_fan_speed(fan, status, float(humidity), {}, False, now)
        status.speed = Reading(decision.speed, _LONG_AGO)
        speeds.append(decision.speed)

    return speeds


def plot_speed_bands():
    """Plot rising and falling sweeps for all fans."""
    config = load_config()

    rising = np.linspace(0, 100, 401)
    falling = rising[::-1]

    fans = [(room, fan) for room in config.rooms.values() for fan in room.fans]
    fig, axes = plt.subplots(len(fans), 1, figsize=(12, 4 * max(1, len(fans))), squeeze=False)

    for ax, (room, fan) in zip(axes[:, 0], fans):
        up = [SPEED_RANK[s] for s in hysteresis_sweep(fan, rising)]
        down = [SPEED_RANK[s] for s in hysteresis_sweep(fan, np.concatenate([rising, falling]))]
        down = down[len(rising):]

        ax.step(rising, up, where="post", label="Humidity rising", linewidth=2)
        ax.step(falling, down, where="post", label="Humidity falling", linewidth=2, linestyle="--")

        for threshold in (fan.min_humidity_threshold, fan.max_humidity_threshold):
            ax.axvline(x=threshold, linestyle=":", alpha=0.4, color="gray")

        ax.set_title(f"{room.label} / {fan.label}", fontsize=12, fontweight="bold")
        ax.set_xlabel("Room Humidity (%)")
        ax.set_yticks(list(SPEED_RANK.values()))
        ax.set_yticklabels(list(SPEED_RANK.keys()))
        ax.set_xlim(0, 100)
        ax.grid(True, alpha=0.3)
        ax.legend(loc="upper left", fontsize=10)

    plt.tight_layout()
    plt.savefig("speed_bands.png", dpi=150, bbox_inches="tight")
    print("Graph saved to: speed_bands.png")
    plt.show()


if __name__ == "__main__":
    plot_speed_bands()
