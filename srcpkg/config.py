# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Install configuration.

Values come from, in increasing precedence: built-in defaults, `SRCPKG_*`
environment variables, explicit overrides (CLI flags).
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from srcpkg.errors import SrcpkgError

ENV_PREFIX = "SRCPKG_PREFIX"
ENV_TMPDIR = "SRCPKG_TMPDIR"
ENV_FETCH_TIMEOUT = "SRCPKG_FETCH_TIMEOUT"
ENV_BUILD_TIMEOUT = "SRCPKG_BUILD_TIMEOUT"
ENV_LOG_LEVEL = "SRCPKG_LOG_LEVEL"

DEFAULT_LOG_LEVEL = "WARNING"


def default_prefix_root() -> Path:
	return Path.home() / ".local" / "srcpkg"


@dataclass(frozen=True)
class InstallOptions:
	prefix_root: Path
	tmp_root: Path
	fetch_timeout: float | None = None
	build_timeout: float | None = None

	def install_prefix(self, name: str, version: str) -> Path:
		"""Each release gets its own directory; versions install side by side."""
		return self.prefix_root / name / version

	def to_dict(self) -> dict[str, Any]:
		return {
			"prefix_root": str(self.prefix_root),
			"tmp_root": str(self.tmp_root),
			"fetch_timeout": self.fetch_timeout,
			"build_timeout": self.build_timeout,
		}


def _parse_timeout(raw: str | None, *, var: str) -> float | None:
	if raw is None or not raw.strip():
		return None
	try:
		val = float(raw)
	except ValueError as err:
		raise SrcpkgError(reason_code="CONFIG_INVALID", message=f"{var} must be a number of seconds, got {raw!r}", stage="config") from err
	if val <= 0:
		raise SrcpkgError(reason_code="CONFIG_INVALID", message=f"{var} must be positive, got {raw!r}", stage="config")
	return val


def load_options(
	environ: Mapping[str, str] | None = None,
	*,
	prefix_root: Path | None = None,
	tmp_root: Path | None = None,
	fetch_timeout: float | None = None,
	build_timeout: float | None = None,
) -> InstallOptions:
	env = os.environ if environ is None else environ
	if prefix_root is None:
		prefix_root = Path(env[ENV_PREFIX]).expanduser() if env.get(ENV_PREFIX) else default_prefix_root()
	if tmp_root is None:
		tmp_root = Path(env[ENV_TMPDIR]).expanduser() if env.get(ENV_TMPDIR) else Path(tempfile.gettempdir())
	if fetch_timeout is None:
		fetch_timeout = _parse_timeout(env.get(ENV_FETCH_TIMEOUT), var=ENV_FETCH_TIMEOUT)
	if build_timeout is None:
		build_timeout = _parse_timeout(env.get(ENV_BUILD_TIMEOUT), var=ENV_BUILD_TIMEOUT)
	return InstallOptions(
		prefix_root=prefix_root,
		tmp_root=tmp_root,
		fetch_timeout=fetch_timeout,
		build_timeout=build_timeout,
	)


def log_level(environ: Mapping[str, str] | None = None) -> str:
	env = os.environ if environ is None else environ
	return (env.get(ENV_LOG_LEVEL) or DEFAULT_LOG_LEVEL).upper()
