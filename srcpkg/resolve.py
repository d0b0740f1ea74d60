# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Build-dependency resolution.

The pipeline only asks "is toolchain X available, and where?". How that is
answered is up to the resolver: `PathResolver` looks on PATH, `StaticResolver`
answers from a fixed table (tests, pinned toolchains).
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

# Toolchain name -> executable that proves it is installed.
DEFAULT_TOOLCHAIN_EXECUTABLES: dict[str, str] = {
	"rust": "cargo",
	"go": "go",
	"cmake": "cmake",
	"meson": "meson",
	"ninja": "ninja",
	"autoconf": "autoconf",
	"automake": "automake",
	"pkg-config": "pkg-config",
	"python": "python3",
	"node": "node",
	"zig": "zig",
}


@dataclass(frozen=True)
class ResolvedDependency:
	name: str
	available: bool
	path: Path | None = None

	def to_dict(self) -> dict[str, Any]:
		return {"name": self.name, "available": self.available, "path": str(self.path) if self.path is not None else None}


class DependencyResolver(Protocol):
	def resolve(self, name: str) -> ResolvedDependency: ...


@dataclass(frozen=True)
class PathResolver:
	"""Resolve a toolchain by finding its executable on PATH."""

	executables: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_TOOLCHAIN_EXECUTABLES))
	search_path: str | None = None

	def resolve(self, name: str) -> ResolvedDependency:
		exe = self.executables.get(name, name)
		found = shutil.which(exe, path=self.search_path if self.search_path is not None else os.environ.get("PATH"))
		logger.debug("resolve %s via %s: %s", name, exe, found)
		if found is None:
			return ResolvedDependency(name=name, available=False)
		return ResolvedDependency(name=name, available=True, path=Path(found))


@dataclass(frozen=True)
class StaticResolver:
	"""Resolve from a fixed name -> executable path table; unknown names are unavailable."""

	table: Mapping[str, Path | None]

	def resolve(self, name: str) -> ResolvedDependency:
		path = self.table.get(name)
		if path is None:
			return ResolvedDependency(name=name, available=False)
		return ResolvedDependency(name=name, available=True, path=Path(path))
