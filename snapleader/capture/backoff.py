# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Capture interval policy.

While healthy, captures happen at a random point between three and five
minutes after the previous one so nodes never fall into lockstep. After a
failure the delay grows exponentially from 30 seconds, capped at 8 minutes:

    failures:  1    2    3     4     5+
    delay:     30s  60s  120s  240s  480s

Example:
    >>> next_capture_interval(0)        # somewhere in [180, 300]
    237.4
    >>> next_capture_interval(3)
    120.0
"""

from __future__ import annotations

import random
from typing import Optional

from snapleader.capture.config import CaptureConfig

_DEFAULT_CONFIG = CaptureConfig()


def next_capture_interval(
    consecutive_failures: int,
    config: Optional[CaptureConfig] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait before the next capture.

    Args:
        consecutive_failures: Failures since the last success
        config: Interval bounds (defaults to CaptureConfig())
        rng: Random source for the healthy jitter (defaults to the random module)

    Returns:
        Delay in seconds
    """
    config = config or _DEFAULT_CONFIG
    if consecutive_failures <= 0:
        uniform = rng.uniform if rng is not None else random.uniform
        return uniform(config.min_interval_s, config.max_interval_s)

    # Exponential backoff; exponent clamped so huge counts cannot overflow a float
    exponent = min(consecutive_failures - 1, 32)
    return min(
        config.backoff_base_s * (2 ** exponent),
        config.backoff_max_s,
    )
