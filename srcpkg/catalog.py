# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Formula catalog (v0).

A catalog is an append-only, version-indexed collection of manifests. Each
release of a package is its own manifest entry; entries are never rewritten,
a version bump appends a new one. Installs pick a release by version (or the
highest version when none is given), so older releases stay installable.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from srcpkg.errors import MalformedManifestError, PackageIdentity, SrcpkgError
from srcpkg.manifest import Manifest, manifest_from_dict, read_json_file

CATALOG_FORMAT = "srcpkg-catalog"
CATALOG_VERSION = 0


def canonical_json_bytes(obj: Any) -> bytes:
	"""Catalog bytes: sorted keys, compact separators, UTF-8 text kept as is."""
	return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class Catalog:
	manifests: tuple[Manifest, ...] = ()
	x: dict[str, Any] | None = field(default=None, hash=False)

	def names(self) -> list[str]:
		return sorted({m.name for m in self.manifests})

	def releases(self, name: str) -> list[Manifest]:
		"""Releases of `name`, oldest version first."""
		return sorted((m for m in self.manifests if m.name == name), key=lambda m: m.version_key)

	def select(self, *, name: str | None = None, version: str | None = None) -> Manifest:
		if name is None:
			names = self.names()
			if len(names) != 1:
				raise SrcpkgError(
					reason_code="PACKAGE_AMBIGUOUS" if names else "CATALOG_EMPTY",
					message=(
						f"catalog holds several packages ({', '.join(names)}); pick one by name"
						if names
						else "catalog holds no releases"
					),
					stage="manifest",
				)
			name = names[0]
		releases = self.releases(name)
		if not releases:
			raise SrcpkgError(
				reason_code="PACKAGE_NOT_FOUND",
				message=f"no releases of '{name}' in catalog",
				stage="manifest",
				identity=PackageIdentity(name=name, version=version),
			)
		if version is None:
			return releases[-1]
		for m in releases:
			if m.version == version:
				return m
		known = ", ".join(m.version for m in releases)
		raise SrcpkgError(
			reason_code="RELEASE_NOT_FOUND",
			message=f"'{name}' has no release {version} (known: {known})",
			stage="manifest",
			identity=PackageIdentity(name=name, version=version),
		)

	def with_release(self, manifest: Manifest) -> Catalog:
		for m in self.manifests:
			if m.name == manifest.name and m.version == manifest.version:
				raise SrcpkgError(
					reason_code="RELEASE_EXISTS",
					message="release already recorded; catalog entries are append-only",
					stage="catalog",
					identity=manifest.identity,
				)
		return replace(self, manifests=self.manifests + (manifest,))

	def to_dict(self) -> dict[str, Any]:
		out: dict[str, Any] = {
			"format": CATALOG_FORMAT,
			"version": CATALOG_VERSION,
			"formulas": [_compact(m.to_dict()) for m in self.manifests],
		}
		if self.x is not None:
			out["x"] = dict(self.x)
		return out


def _compact(obj: dict[str, Any]) -> dict[str, Any]:
	return {k: v for k, v in obj.items() if v is not None and v != []}


def is_catalog_obj(obj: Any) -> bool:
	return isinstance(obj, dict) and obj.get("format") == CATALOG_FORMAT


def catalog_from_dict(obj: Any, *, where: str = "catalog") -> Catalog:
	if not isinstance(obj, dict):
		raise MalformedManifestError(reason_code="CATALOG_INVALID", message=f"{where}: catalog must be a JSON object")
	if obj.get("format") != CATALOG_FORMAT or obj.get("version") != CATALOG_VERSION:
		raise MalformedManifestError(
			reason_code="CATALOG_INVALID",
			message=f"{where}: unsupported catalog format/version (upgrade srcpkg?)",
		)
	unknown_top = sorted(set(obj.keys()) - {"format", "version", "formulas", "x"})
	if unknown_top:
		raise MalformedManifestError(
			reason_code="CATALOG_INVALID",
			message=f"{where}: catalog has unknown top-level fields: {', '.join(unknown_top)}",
		)
	if "x" in obj and not isinstance(obj.get("x"), dict):
		raise MalformedManifestError(reason_code="CATALOG_INVALID", message=f"{where}: catalog top-level 'x' must be an object")
	formulas = obj.get("formulas")
	if not isinstance(formulas, list):
		raise MalformedManifestError(reason_code="CATALOG_INVALID", message=f"{where}: 'formulas' must be a list")
	catalog = Catalog(x=dict(obj["x"]) if "x" in obj else None)
	for i, raw in enumerate(formulas):
		manifest = manifest_from_dict(raw, where=f"{where}: formulas[{i}]")
		try:
			catalog = catalog.with_release(manifest)
		except SrcpkgError as err:
			raise MalformedManifestError(
				reason_code="CATALOG_DUPLICATE_RELEASE",
				message=f"{where}: formulas[{i}] duplicates ({manifest.name}, {manifest.version})",
				identity=manifest.identity,
			) from err
	return catalog


def load_catalog(path: Path) -> Catalog:
	"""
	Load a formula file as a catalog.

	A plain single-manifest file is accepted too and reads as a catalog with
	one release.
	"""
	obj = read_json_file(path)
	try:
		if is_catalog_obj(obj):
			return catalog_from_dict(obj, where=str(path))
		return Catalog(manifests=(manifest_from_dict(obj, where=str(path)),))
	except MalformedManifestError as err:
		err.artifact_path = str(path)
		raise


def load_release(path: Path, *, name: str | None = None, version: str | None = None) -> Manifest:
	return load_catalog(path).select(name=name, version=version)


def save_catalog(path: Path, catalog: Catalog) -> None:
	path.parent.mkdir(parents=True, exist_ok=True)
	tmp = path.with_name(path.name + f".tmp.{os.getpid()}")
	tmp.write_bytes(canonical_json_bytes(catalog.to_dict()) + b"\n")
	os.replace(tmp, path)


def append_release(path: Path, manifest: Manifest) -> Catalog:
	"""
	Append `manifest` to the catalog at `path`, creating the catalog if needed.

	A single-manifest file is upgraded to catalog form on first append.
	"""
	catalog = load_catalog(path) if path.exists() else Catalog()
	catalog = catalog.with_release(manifest)
	save_catalog(path, catalog)
	return catalog
