# stagecraft/src/stagecraft/__init__.py
"""
This package contains the core logic for building a set of dependent stages
into a single, reproducible installable package.
"""

from .builder import build
from .config import BuildSettings
from .executor import StageExecutor
from .fetcher import ChecksumFetcher
from .graph import BuildGraph
from .models import (
    Artifact,
    BuildArg,
    CopyOperation,
    ExternalDependency,
    PackageManifest,
    Stage,
)
from .packaging.packager import Packager
from .store import ArtifactStore

__all__ = [
    "Artifact",
    "ArtifactStore",
    "BuildArg",
    "BuildGraph",
    "BuildSettings",
    "ChecksumFetcher",
    "CopyOperation",
    "ExternalDependency",
    "PackageManifest",
    "Packager",
    "Stage",
    "StageExecutor",
    "build",
]
