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
SnapLeader - leader-coordinated activity capture.

Several equal nodes (processes, or coordinators inside one process) share
a channel. Exactly one of them leads: it captures and uploads periodic
activity snapshots and publishes its state, while the others mirror it
and take over when it goes silent.

Example:
    >>> from snapleader import TrackingNode, TrackingNodeConfig
    >>> from snapleader.capture import DesktopCaptureSource
    >>>
    >>> node = await TrackingNode.create(TrackingNodeConfig(), DesktopCaptureSource)
    >>> async with node:
    ...     await node.track("entry-1", project_id="project-1")
"""

__version__ = "0.1.0"

from snapleader.node import TrackedActivity, TrackingNode, TrackingNodeConfig

__all__ = [
    "TrackedActivity",
    "TrackingNode",
    "TrackingNodeConfig",
    "__version__",
]
