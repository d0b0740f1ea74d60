# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Install pipeline (v0).

pending -> fetching -> verifying -> building -> validating -> succeeded | failed

Every stage fails closed: the first error stops the run and is reported with
the stage it came from. Nothing is retried; running again starts from a fresh
download in a fresh staging directory. Failed post-install checks are the one
soft failure: the install is reported in full, with `ok=False`.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Literal

from srcpkg.build import build_and_install
from srcpkg.config import InstallOptions
from srcpkg.errors import PackageIdentity, SrcpkgError, StorageError, ValidationFailure
from srcpkg.fetch import Transport, fetch_archive
from srcpkg.manifest import Manifest
from srcpkg.process import ProcessRunner, SubprocessRunner
from srcpkg.resolve import DependencyResolver, PathResolver
from srcpkg.validate import InstallationResult, validate_install
from srcpkg.verify import VerifiedArchive, verify_archive

logger = logging.getLogger(__name__)

PipelineState = Literal["pending", "fetching", "verifying", "building", "validating", "succeeded", "failed"]

_STAGE_OF_STATE: dict[str, str] = {
	"fetching": "fetch",
	"verifying": "verify",
	"building": "build",
	"validating": "validate",
}


@dataclass(frozen=True)
class InstallReport:
	ok: bool
	invocation_id: str
	identity: PackageIdentity
	state: PipelineState
	failed_state: PipelineState | None
	checksum: str | None
	result: InstallationResult | None
	errors: list[SrcpkgError]

	def to_dict(self) -> dict[str, Any]:
		return {
			"ok": self.ok,
			"invocation_id": self.invocation_id,
			"identity": self.identity.to_dict(),
			"state": self.state,
			"failed_state": self.failed_state,
			"checksum": self.checksum,
			"result": self.result.to_dict() if self.result is not None else None,
			"errors": [e.to_dict() for e in self.errors],
		}


def new_invocation_id(name: str, version: str) -> str:
	return f"{name}-{version}-{uuid.uuid4().hex[:12]}"


@contextmanager
def invocation_staging(tmp_root: Path, invocation_id: str) -> Iterator[Path]:
	"""
	A private staging directory for one invocation, removed on every exit path.
	"""
	try:
		tmp_root.mkdir(parents=True, exist_ok=True)
		staging = Path(tempfile.mkdtemp(prefix=f"srcpkg-{invocation_id}-", dir=tmp_root))
	except OSError as err:
		raise StorageError(
			reason_code="STAGING_CREATE_FAILED",
			message=f"cannot create staging directory: {err}",
			artifact_path=str(tmp_root),
		) from err
	logger.debug("staging %s", staging)
	try:
		yield staging
	finally:
		shutil.rmtree(staging, ignore_errors=True)


def _attach_identity(err: SrcpkgError, manifest: Manifest) -> SrcpkgError:
	if err.identity is None or not err.identity.name:
		err.identity = manifest.identity
	return err


class _Run:
	def __init__(self, manifest: Manifest, on_state: Callable[[PipelineState], None] | None) -> None:
		self.manifest = manifest
		self.invocation_id = new_invocation_id(manifest.name, manifest.version)
		self.state: PipelineState = "pending"
		self._on_state = on_state

	def enter(self, state: PipelineState) -> None:
		self.state = state
		logger.info("%s: %s", self.invocation_id, state)
		if self._on_state is not None:
			self._on_state(state)

	def report(
		self,
		*,
		verified: VerifiedArchive | None = None,
		result: InstallationResult | None = None,
		error: SrcpkgError | None = None,
		failed_state: PipelineState | None = None,
	) -> InstallReport:
		ok = error is None
		self.enter("succeeded" if ok else "failed")
		return InstallReport(
			ok=ok,
			invocation_id=self.invocation_id,
			identity=self.manifest.identity,
			state=self.state,
			failed_state=failed_state,
			checksum=verified.checksum if verified is not None else None,
			result=result,
			errors=[] if error is None else [_attach_identity(error, self.manifest)],
		)

	def fail(self, err: Exception, *, verified: VerifiedArchive | None = None) -> InstallReport:
		failed_state = self.state
		if not isinstance(err, SrcpkgError):
			logger.debug("internal error in %s", failed_state, exc_info=err)
			stage = _STAGE_OF_STATE.get(failed_state, "internal")
			err = SrcpkgError(reason_code="INTERNAL_ERROR", message=str(err) or type(err).__name__, stage=stage)
		return self.report(verified=verified, error=err, failed_state=failed_state)


def install_v0(
	manifest: Manifest,
	opts: InstallOptions,
	*,
	session: Transport | None = None,
	resolver: DependencyResolver | None = None,
	runner: ProcessRunner | None = None,
	on_state: Callable[[PipelineState], None] | None = None,
) -> InstallReport:
	"""
	Fetch, verify, build, install and validate one release.

	Never raises for pipeline failures; inspect `report.ok` and `report.errors`.
	Cancellation (KeyboardInterrupt and friends) is not swallowed: it
	propagates after the external build, if any, has been killed and the
	staging directory has been removed.
	"""
	run = _Run(manifest, on_state)
	resolver = resolver if resolver is not None else PathResolver()
	runner = runner if runner is not None else SubprocessRunner()
	# The build runs inside the unpacked tree, so relative prefixes must be pinned now.
	prefix = opts.install_prefix(manifest.name, manifest.version).absolute()
	verified: VerifiedArchive | None = None
	try:
		with invocation_staging(opts.tmp_root, run.invocation_id) as staging:
			run.enter("fetching")
			staged = fetch_archive(manifest.resolved_url(), staging_dir=staging, session=session, timeout=opts.fetch_timeout)
			run.enter("verifying")
			verified = verify_archive(staged, manifest.expected_checksum)
			run.enter("building")
			installed = build_and_install(
				verified,
				manifest,
				prefix=prefix,
				work_dir=staging / "work",
				resolver=resolver,
				runner=runner,
				timeout=opts.build_timeout,
			)
		run.enter("validating")
		result = validate_install(installed, manifest.post_install_checks, manifest.template_vars(prefix=installed))
	except Exception as err:
		return run.fail(err, verified=verified)

	if not result.success:
		failed = [c.label for c in result.failed_checks]
		err = ValidationFailure(
			reason_code="POST_INSTALL_CHECK_FAILED",
			message=f"{len(failed)} of {len(result.validation_report)} post-install check(s) failed",
			artifact_path=result.installed_path,
			failed_checks=failed,
		)
		return run.report(verified=verified, result=result, error=err, failed_state="validating")
	return run.report(verified=verified, result=result)


def verify_v0(
	manifest: Manifest,
	opts: InstallOptions,
	*,
	session: Transport | None = None,
	on_state: Callable[[PipelineState], None] | None = None,
) -> InstallReport:
	"""Fetch and verify only; nothing is built or installed."""
	run = _Run(manifest, on_state)
	verified: VerifiedArchive | None = None
	try:
		with invocation_staging(opts.tmp_root, run.invocation_id) as staging:
			run.enter("fetching")
			staged = fetch_archive(manifest.resolved_url(), staging_dir=staging, session=session, timeout=opts.fetch_timeout)
			run.enter("verifying")
			verified = verify_archive(staged, manifest.expected_checksum)
	except Exception as err:
		return run.fail(err, verified=verified)
	return run.report(verified=verified)
