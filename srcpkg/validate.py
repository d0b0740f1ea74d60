# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from srcpkg.errors import MalformedManifestError
from srcpkg.manifest import PostInstallCheck, check_target_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
	kind: str
	target: str
	path: str | None
	passed: bool
	detail: str

	@property
	def label(self) -> str:
		return f"{self.kind}:{self.target}"

	def to_dict(self) -> dict[str, Any]:
		return {
			"kind": self.kind,
			"target": self.target,
			"path": self.path,
			"passed": self.passed,
			"detail": self.detail,
		}


@dataclass(frozen=True)
class InstallationResult:
	installed_path: str
	success: bool
	validation_report: tuple[CheckResult, ...]

	@property
	def failed_checks(self) -> list[CheckResult]:
		return [c for c in self.validation_report if not c.passed]

	def to_dict(self) -> dict[str, Any]:
		return {
			"installed_path": self.installed_path,
			"success": self.success,
			"validation_report": [c.to_dict() for c in self.validation_report],
		}


def _run_check(check: PostInstallCheck, root: Path, variables: Mapping[str, str]) -> CheckResult:
	try:
		rel = check_target_path(check.target, variables)
	except MalformedManifestError as err:
		return CheckResult(kind=check.kind, target=check.target, path=None, passed=False, detail=err.message)
	path = root / rel
	if check.kind == "exists":
		if path.exists():
			return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=True, detail="present")
		return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=False, detail="missing")
	if check.kind == "executable":
		if not path.exists():
			return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=False, detail="missing")
		if path.is_dir():
			return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=False, detail="is a directory")
		if not os.access(path, os.X_OK):
			return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=False, detail="not executable")
		return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=True, detail="executable")
	return CheckResult(kind=check.kind, target=check.target, path=str(path), passed=False, detail=f"unknown check kind '{check.kind}'")


def validate_install(
	installed_path: Path,
	checks: Sequence[PostInstallCheck],
	variables: Mapping[str, str],
) -> InstallationResult:
	"""
	Run every check against `installed_path`, in order, read-only.

	A failing check never stops the run: the report always covers all checks.
	"""
	report: list[CheckResult] = []
	for check in checks:
		res = _run_check(check, installed_path, variables)
		logger.info("check %s %s: %s", res.label, "ok" if res.passed else "FAILED", res.detail)
		report.append(res)
	return InstallationResult(
		installed_path=str(installed_path),
		success=all(c.passed for c in report),
		validation_report=tuple(report),
	)
