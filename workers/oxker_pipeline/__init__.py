"""
oxker_pipeline — cross-architecture build-and-package pipeline for oxker.

Resolve a toolchain for the requested platform, warm a dependency cache,
build one statically-linked release binary, and assemble it into a
scratch-based runtime image.

Profile: linux-musl-static-release
"""

__version__ = "1.0.0"
PACKAGE_NAME = "oxker_pipeline"
PIPELINE_VERSION = "v1"
SCHEMA_VERSION = "1.0"
PROFILE_ID = "linux-musl-static-release"

# Read by the oxker binary at startup. DO NOT EDIT.
RUNTIME_ENV_NAME = "OXKER_RUNTIME"
RUNTIME_ENV_VALUE = "container"
