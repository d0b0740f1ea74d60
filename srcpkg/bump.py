# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Release bumps.

A bump records a new upstream release in a catalog: same formula, new
version, and the checksum of whatever the new URL actually serves. The digest
is computed here from the downloaded bytes, never typed in by hand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from srcpkg.catalog import append_release, load_catalog
from srcpkg.errors import MalformedManifestError, SrcpkgError, StorageError
from srcpkg.fetch import Transport, fetch_archive
from srcpkg.manifest import Checksum, Manifest, manifest_from_dict, semver_key
from srcpkg.pipeline import invocation_staging, new_invocation_id
from srcpkg.verify import digest_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BumpOptions:
	catalog_path: Path
	version: str
	tmp_root: Path
	name: str | None = None
	timeout: float | None = None
	allow_older: bool = False


def bump_v0(opts: BumpOptions, *, session: Transport | None = None) -> Manifest:
	"""
	Append a release of `opts.version` to the catalog and return its manifest.

	The newest existing release is the template. The new version must sort
	above it unless `allow_older` is set (backfilling an old release).
	"""
	catalog = load_catalog(opts.catalog_path)
	base = catalog.select(name=opts.name)
	try:
		new_key = semver_key(opts.version)
	except ValueError as err:
		raise MalformedManifestError(reason_code="VERSION_INVALID", message=str(err), stage="catalog") from err
	if not opts.allow_older and new_key <= base.version_key:
		raise SrcpkgError(
			reason_code="BUMP_NOT_NEWER",
			message=f"{opts.version} is not newer than the latest release {base.version}",
			stage="catalog",
			identity=base.identity,
		)

	# Extension data belongs to the release it was recorded with.
	candidate = replace(base, version=opts.version, x=None)
	url = candidate.resolved_url()
	with invocation_staging(opts.tmp_root, new_invocation_id(base.name, opts.version)) as staging:
		staged = fetch_archive(url, staging_dir=staging, session=session, timeout=opts.timeout)
		try:
			hex_digest = digest_file(staged.path, base.checksum.algorithm)
		except OSError as err:
			raise StorageError(
				reason_code="STAGED_ARCHIVE_UNREADABLE",
				message=f"cannot read staged archive: {err}",
				stage="catalog",
				identity=candidate.identity,
				url=url,
				artifact_path=str(staged.path),
			) from err
	candidate = replace(candidate, checksum=Checksum(algorithm=base.checksum.algorithm, hex=hex_digest))
	# Round-trip through the loader so the appended entry is exactly what installs will read.
	release = manifest_from_dict(candidate.to_dict(), where="bumped release")
	append_release(opts.catalog_path, release)
	logger.info("recorded %s %s (%s)", release.name, release.version, release.checksum)
	return release
