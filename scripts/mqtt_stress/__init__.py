"""Helper modules for MQTT stress-test startup orchestration.

This package contains the components that turn instance metadata into an
emqtt-bench run: configuration resolution, host preparation, command
building, test execution and reporting.
"""

from __future__ import annotations
