# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Formula manifest (v0).

A manifest is the static, declarative description of one installable package
version: where its source archive lives, what the archive must hash to, how to
build it, and what to check once it is installed.

Templates (the source URL, build arguments and check targets) use `{name}`
style placeholders. `{name}` and `{version}` are known at load time. `{prefix}`
is the install prefix; build arguments may use it anywhere, check targets only
as a leading component (targets are always relative to the prefix).
"""

from __future__ import annotations

import hashlib
import json
import re
import string
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Literal, Mapping

from srcpkg.errors import MalformedManifestError, PackageIdentity

CheckKind = Literal["exists", "executable"]
CHECK_KINDS: tuple[str, ...] = ("exists", "executable")

# hex length -> algorithm, for bare checksums without an "<algo>:" prefix.
DIGEST_HEX_LENGTHS: dict[str, int] = {"sha256": 64, "sha384": 96, "sha512": 128}
_ALGO_BY_LENGTH = {n: algo for algo, n in DIGEST_HEX_LENGTHS.items()}

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._+-]*$")
_SEMVER_RE = re.compile(
	r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
	r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
	r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

LOAD_TIME_FIELDS = frozenset({"name", "version"})
INSTALL_TIME_FIELDS = LOAD_TIME_FIELDS | {"prefix"}

REQUIRED_FIELDS: tuple[str, ...] = (
	"name",
	"version",
	"source_url_template",
	"checksum",
	"build_command",
)
ALLOWED_FIELDS = frozenset(
	{
		"name",
		"desc",
		"homepage",
		"version",
		"source_url_template",
		"checksum",
		"license",
		"build_dependency",
		"build_command",
		"post_install_checks",
		"x",
	}
)


@dataclass(frozen=True)
class Checksum:
	algorithm: str
	hex: str

	def __str__(self) -> str:
		return f"{self.algorithm}:{self.hex}"


@dataclass(frozen=True)
class PostInstallCheck:
	kind: CheckKind
	target: str

	def to_dict(self) -> dict[str, Any]:
		return {"kind": self.kind, "target": self.target}


@dataclass(frozen=True)
class Manifest:
	name: str
	version: str
	source_url_template: str
	checksum: Checksum
	build_command: tuple[str, ...]
	post_install_checks: tuple[PostInstallCheck, ...] = ()
	build_dependency: str | None = None
	license: str | None = None
	desc: str | None = None
	homepage: str | None = None
	# Free-form extension data (tooling metadata); carried through saves untouched.
	x: dict[str, Any] | None = field(default=None, hash=False)

	@property
	def identity(self) -> PackageIdentity:
		return PackageIdentity(name=self.name, version=self.version)

	@property
	def expected_checksum(self) -> Checksum:
		return self.checksum

	@property
	def version_key(self) -> tuple:
		return semver_key(self.version)

	def resolved_url(self) -> str:
		"""Return the download URL with the version substituted in."""
		return render_template(self.source_url_template, self.template_vars())

	def template_vars(self, *, prefix: Path | str | None = None) -> dict[str, str]:
		out = {"name": self.name, "version": self.version}
		if prefix is not None:
			out["prefix"] = str(prefix)
		return out

	def to_dict(self) -> dict[str, Any]:
		out: dict[str, Any] = {
			"name": self.name,
			"desc": self.desc,
			"homepage": self.homepage,
			"version": self.version,
			"source_url_template": self.source_url_template,
			"checksum": str(self.checksum),
			"license": self.license,
			"build_dependency": self.build_dependency,
			"build_command": list(self.build_command),
			"post_install_checks": [c.to_dict() for c in self.post_install_checks],
		}
		if self.x is not None:
			out["x"] = dict(self.x)
		return out


def render_template(template: str, variables: Mapping[str, str]) -> str:
	try:
		return template.format_map(dict(variables))
	except (KeyError, IndexError, ValueError) as err:
		raise MalformedManifestError(
			reason_code="TEMPLATE_INVALID",
			message=f"cannot render template {template!r}: {err}",
		) from err


def template_fields(template: str) -> set[str]:
	"""Return the placeholder names used by `template`."""
	fields: set[str] = set()
	try:
		parsed = list(string.Formatter().parse(template))
	except ValueError as err:
		raise ValueError(f"malformed template {template!r}: {err}") from err
	for _literal, name, fmt, _conv in parsed:
		if name is None:
			continue
		if not name or not name.isidentifier():
			raise ValueError(f"template {template!r} uses unsupported placeholder {{{name}}}")
		if fmt:
			raise ValueError(f"template {template!r} must not use format specs")
		fields.add(name)
	return fields


def semver_key(version: str) -> tuple:
	"""
	Sort key for a semantic version string.

	Pre-releases sort before the release they precede; build metadata is
	ignored, as semver requires.
	"""
	m = _SEMVER_RE.match(version)
	if m is None:
		raise ValueError(f"not a semantic version: {version!r}")
	major, minor, patch, pre, _build = m.groups()
	if pre is None:
		pre_key: tuple = (1,)
	else:
		ids: list[tuple[int, int | str]] = []
		for part in pre.split("."):
			ids.append((0, int(part)) if part.isdigit() else (1, part))
		pre_key = (0, tuple(ids))
	return (int(major), int(minor), int(patch), pre_key)


def parse_checksum(text: str) -> Checksum:
	"""
	Parse `"<algo>:<hex>"` or bare hex (algorithm implied by its length).
	"""
	if ":" in text:
		algo, _, hex_part = text.partition(":")
		algo = algo.strip().lower()
		if algo not in DIGEST_HEX_LENGTHS:
			raise ValueError(f"unsupported checksum algorithm '{algo}'")
	else:
		hex_part = text
		algo = _ALGO_BY_LENGTH.get(len(hex_part.strip()), "")
		if not algo:
			raise ValueError(f"checksum length {len(hex_part.strip())} does not match any supported algorithm")
	hex_part = hex_part.strip()
	if not _HEX_RE.match(hex_part):
		raise ValueError("checksum must be hex-encoded")
	if len(hex_part) != DIGEST_HEX_LENGTHS[algo]:
		raise ValueError(f"{algo} checksum must be {DIGEST_HEX_LENGTHS[algo]} hex digits, got {len(hex_part)}")
	# hashlib must actually provide the algorithm on this interpreter.
	hashlib.new(algo)
	return Checksum(algorithm=algo, hex=hex_part.lower())


def _strip_prefix(target: str) -> str:
	if target.startswith("{prefix}"):
		return target[len("{prefix}") :].lstrip("/")
	return target


def _normalize_check_target(target: str) -> str:
	p = PurePosixPath(target.replace("\\", "/"))
	if p.is_absolute():
		raise ValueError(f"check target must be relative to the install prefix, got: {target}")
	if not p.parts or str(p) == ".":
		raise ValueError(f"check target must be non-empty, got: {target}")
	if any(part == ".." for part in p.parts):
		raise ValueError(f"check target must not contain '..', got: {target}")
	return str(p)


def _require_str(obj: Mapping[str, Any], key: str) -> str:
	val = obj.get(key)
	if not isinstance(val, str) or not val.strip():
		raise ValueError(f"field '{key}' must be a non-empty string")
	return val


def _check_template(template: str, *, allowed: frozenset[str] | set[str], what: str) -> None:
	unknown = sorted(template_fields(template) - set(allowed))
	if unknown:
		raise ValueError(f"{what} uses unknown placeholder(s): {', '.join(unknown)}")


def manifest_from_dict(obj: Any, *, where: str = "manifest") -> Manifest:
	"""Validate a decoded JSON object and build a `Manifest` from it."""
	try:
		return _manifest_from_dict(obj)
	except MalformedManifestError:
		raise
	except (ValueError, TypeError) as err:
		ident = None
		if isinstance(obj, dict):
			name = obj.get("name") if isinstance(obj.get("name"), str) else None
			version = obj.get("version") if isinstance(obj.get("version"), str) else None
			ident = PackageIdentity(name=name, version=version)
		raise MalformedManifestError(
			reason_code="MANIFEST_INVALID",
			message=f"{where}: {err}",
			identity=ident,
		) from err


def _manifest_from_dict(obj: Any) -> Manifest:
	if not isinstance(obj, dict):
		raise ValueError("manifest must be a JSON object")
	missing = [k for k in REQUIRED_FIELDS if k not in obj]
	if missing:
		raise ValueError(f"missing required field(s): {', '.join(missing)}")
	unknown = sorted(set(obj.keys()) - ALLOWED_FIELDS)
	if unknown:
		raise ValueError(f"unknown field(s): {', '.join(unknown)}")

	name = _require_str(obj, "name")
	if not _NAME_RE.match(name):
		raise ValueError(f"invalid package name '{name}'")
	version = _require_str(obj, "version")
	try:
		semver_key(version)
	except ValueError as err:
		raise ValueError(f"field 'version': {err}") from err

	url_template = _require_str(obj, "source_url_template")
	_check_template(url_template, allowed=LOAD_TIME_FIELDS, what="source_url_template")

	raw_checksum = obj.get("checksum")
	if not isinstance(raw_checksum, str):
		raise ValueError("field 'checksum' must be a string")
	try:
		checksum = parse_checksum(raw_checksum)
	except ValueError as err:
		raise ValueError(f"field 'checksum': {err}") from err

	cmd = obj.get("build_command")
	if not isinstance(cmd, list) or not cmd or any((not isinstance(a, str) or not a) for a in cmd):
		raise ValueError("field 'build_command' must be a non-empty list of non-empty strings")
	for arg in cmd:
		_check_template(arg, allowed=INSTALL_TIME_FIELDS, what=f"build_command argument {arg!r}")

	raw_checks = obj.get("post_install_checks") or []
	if not isinstance(raw_checks, list):
		raise ValueError("field 'post_install_checks' must be a list")
	checks: list[PostInstallCheck] = []
	for i, raw in enumerate(raw_checks):
		if not isinstance(raw, dict):
			raise ValueError(f"post_install_checks[{i}] must be an object")
		kind = raw.get("kind")
		target = raw.get("target")
		if kind not in CHECK_KINDS:
			raise ValueError(f"post_install_checks[{i}].kind must be one of {', '.join(CHECK_KINDS)}, got {kind!r}")
		if not isinstance(target, str) or not target:
			raise ValueError(f"post_install_checks[{i}].target must be a non-empty string")
		_check_template(_strip_prefix(target), allowed=LOAD_TIME_FIELDS, what=f"post_install_checks[{i}].target")
		_normalize_check_target(_strip_prefix(target))
		checks.append(PostInstallCheck(kind=kind, target=target))

	build_dependency = obj.get("build_dependency")
	if build_dependency is not None and (not isinstance(build_dependency, str) or not build_dependency.strip()):
		raise ValueError("field 'build_dependency' must be a non-empty string or null")

	for key in ("license", "desc", "homepage"):
		if obj.get(key) is not None and not isinstance(obj.get(key), str):
			raise ValueError(f"field '{key}' must be a string")

	if "x" in obj and not isinstance(obj.get("x"), dict):
		raise ValueError("field 'x' must be an object")

	manifest = Manifest(
		name=name,
		version=version,
		source_url_template=url_template,
		checksum=checksum,
		build_command=tuple(cmd),
		post_install_checks=tuple(checks),
		build_dependency=build_dependency,
		license=obj.get("license"),
		desc=obj.get("desc"),
		homepage=obj.get("homepage"),
		x=dict(obj["x"]) if "x" in obj else None,
	)
	# Render once so URL problems surface at load time, not mid-pipeline.
	manifest.resolved_url()
	return manifest


def read_json_file(path: Path) -> Any:
	try:
		return json.loads(path.read_text(encoding="utf-8"))
	except FileNotFoundError as err:
		raise MalformedManifestError(
			reason_code="MANIFEST_MISSING",
			message="manifest file not found",
			artifact_path=str(path),
		) from err
	except (OSError, UnicodeDecodeError, json.JSONDecodeError) as err:
		raise MalformedManifestError(
			reason_code="MANIFEST_PARSE_ERROR",
			message=str(err),
			artifact_path=str(path),
		) from err


def load_manifest(path: Path) -> Manifest:
	obj = read_json_file(path)
	try:
		return manifest_from_dict(obj, where=str(path))
	except MalformedManifestError as err:
		err.artifact_path = str(path)
		raise


def check_target_path(target: str, variables: Mapping[str, str]) -> str:
	"""Render a check target and return it as a prefix-relative POSIX path."""
	rendered = render_template(_strip_prefix(target), variables)
	try:
		return _normalize_check_target(rendered)
	except ValueError as err:
		raise MalformedManifestError(reason_code="CHECK_TARGET_INVALID", message=str(err)) from err
