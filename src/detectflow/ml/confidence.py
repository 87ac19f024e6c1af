"""Temperature-scaled softmax over similarity scores.

Raw CLIP cosine similarities sit in a narrow band (roughly 0.20-0.35), so a
plain softmax is close to uniform. Multiplying by a sharpening factor turns
small similarity gaps into a decisive confidence gap. The factor is
configurable through ``DETECTFLOW_SOFTMAX_TEMPERATURE``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

DEFAULT_TEMPERATURE: float = 100.0


def normalize(scores: Sequence[float], temperature: float = DEFAULT_TEMPERATURE) -> list[float]:
    """Convert scores into a probability distribution of the same length.

    Args:
        scores: Raw similarity scores, in label order.
        temperature: Sharpening factor applied after the max-shift.

    Returns:
        Non-negative confidences summing to 1 (empty for empty input).
    """
    if len(scores) == 0:
        return []
    values = np.asarray(scores, dtype=np.float64)
    exps = np.exp((values - values.max()) * temperature)
    return (exps / exps.sum()).tolist()
