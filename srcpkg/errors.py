# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(frozen=True)
class PackageIdentity:
	name: str | None = None
	version: str | None = None

	def to_dict(self) -> dict[str, Any]:
		return {"name": self.name, "version": self.version}


@dataclass(eq=False)
class SrcpkgError(Exception):
	"""
	A structured, serializable error for srcpkg.

	Every error carries a stable `reason_code` and the pipeline `stage` it
	originated from, plus whatever context is useful for diagnosing it.
	Subclasses only pick the stage; they add no fields of their own.
	"""

	default_stage: ClassVar[str] = "internal"

	reason_code: str
	message: str
	stage: str | None = None
	identity: PackageIdentity | None = None
	url: str | None = None
	artifact_path: str | None = None
	checksum_expected: str | None = None
	checksum_got: str | None = None
	dependency: str | None = None
	returncode: int | None = None
	stdout: str | None = None
	stderr: str | None = None
	failed_checks: list[str] | None = None

	def __post_init__(self) -> None:
		if self.stage is None:
			self.stage = self.default_stage

	def __str__(self) -> str:
		return self.format_human()

	@property
	def kind(self) -> str:
		return type(self).__name__

	def to_dict(self) -> dict[str, Any]:
		return {
			"kind": self.kind,
			"reason_code": self.reason_code,
			"message": self.message,
			"stage": self.stage,
			"identity": self.identity.to_dict() if self.identity is not None else None,
			"url": self.url,
			"artifact_path": self.artifact_path,
			"checksum_expected": self.checksum_expected,
			"checksum_got": self.checksum_got,
			"dependency": self.dependency,
			"returncode": self.returncode,
			"stdout": self.stdout,
			"stderr": self.stderr,
			"failed_checks": list(self.failed_checks) if self.failed_checks is not None else None,
		}

	def format_human(self) -> str:
		parts: list[str] = [f"[{self.stage}:{self.reason_code}] {self.message}"]
		ident = self.identity
		if ident is not None and ident.name:
			parts.append(f"package=({ident.name}, {ident.version})")
		if self.url:
			parts.append(f"url={self.url}")
		if self.artifact_path:
			parts.append(f"artifact_path={self.artifact_path}")
		if self.dependency:
			parts.append(f"dependency={self.dependency}")
		if self.checksum_expected or self.checksum_got:
			parts.append(f"checksum_expected={self.checksum_expected}")
			parts.append(f"checksum_got={self.checksum_got}")
		if self.returncode is not None:
			parts.append(f"returncode={self.returncode}")
		if self.failed_checks:
			parts.append(f"failed_checks={','.join(self.failed_checks)}")
		text = " ".join(parts)
		# Build output is usually the only useful clue; keep the tail of it.
		tail = _output_tail(self.stderr) or _output_tail(self.stdout)
		if tail:
			text += "\n" + tail
		return text


def _output_tail(text: str | None, *, max_lines: int = 20) -> str:
	if not text:
		return ""
	lines = text.rstrip().splitlines()
	return "\n".join(lines[-max_lines:])


class MalformedManifestError(SrcpkgError):
	default_stage = "manifest"


class NetworkError(SrcpkgError):
	default_stage = "fetch"


class StorageError(SrcpkgError):
	default_stage = "fetch"


class IntegrityError(SrcpkgError):
	default_stage = "verify"


class MissingDependencyError(SrcpkgError):
	default_stage = "build"


class BuildError(SrcpkgError):
	default_stage = "build"


class ValidationFailure(SrcpkgError):
	default_stage = "validate"


class StageTimeoutError(SrcpkgError, TimeoutError):
	"""A caller deadline expired; resources acquired so far have been released."""


class FetchTimeoutError(StageTimeoutError, NetworkError):
	default_stage = "fetch"


class BuildTimeoutError(StageTimeoutError):
	default_stage = "build"
