"""
unhealthy_fixture — a container that always ends up unhealthy.

Test double for tools that monitor docker health checks. The marker file
exists from image build time and the probe treats its presence as a
failure, so every probe fails and the container turns unhealthy once the
platform's retry count is exhausted. The main process writes a line to
stderr on a fixed period and never exits.
"""

__version__ = "1.0.0"
MARKER_PATH = "/healthy"
