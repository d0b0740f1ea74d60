# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
	argv: tuple[str, ...]
	returncode: int
	stdout: str
	stderr: str

	def to_dict(self) -> dict[str, Any]:
		return {"argv": list(self.argv), "returncode": self.returncode, "stdout": self.stdout, "stderr": self.stderr}


class ProcessRunner(Protocol):
	def run(
		self,
		argv: Sequence[str],
		*,
		cwd: Path,
		env: Mapping[str, str] | None = None,
		timeout: float | None = None,
	) -> ProcessResult:
		"""
		Run `argv` to completion and capture its output.

		Raises `subprocess.TimeoutExpired` once `timeout` passes (the process is
		gone by then) and `OSError` when the command cannot be started.
		"""
		...


class SubprocessRunner:
	"""
	Run external commands with `subprocess`.

	On POSIX the child gets its own session so that a timeout or cancellation
	can take down the whole process group (compilers fork a lot).
	"""

	def run(
		self,
		argv: Sequence[str],
		*,
		cwd: Path,
		env: Mapping[str, str] | None = None,
		timeout: float | None = None,
	) -> ProcessResult:
		logger.info("running %s (cwd=%s)", " ".join(argv), cwd)
		proc = subprocess.Popen(
			list(argv),
			cwd=str(cwd),
			env=dict(env) if env is not None else None,
			stdin=subprocess.DEVNULL,
			stdout=subprocess.PIPE,
			stderr=subprocess.PIPE,
			text=True,
			errors="replace",
			start_new_session=(os.name == "posix"),
		)
		try:
			out, err = proc.communicate(timeout=timeout)
		except BaseException:
			# Timeout, KeyboardInterrupt, anything: the child must not outlive us.
			_terminate(proc)
			raise
		logger.debug("exit %d from %s", proc.returncode, argv[0])
		return ProcessResult(argv=tuple(argv), returncode=proc.returncode, stdout=out or "", stderr=err or "")


def _terminate(proc: subprocess.Popen) -> None:
	# The leader may already be reaped while its children still hold the pipes,
	# so the group is killed unconditionally.
	logger.warning("killing process group of pid %d", proc.pid)
	try:
		if os.name == "posix":
			os.killpg(proc.pid, signal.SIGKILL)
		elif proc.poll() is None:
			proc.kill()
	except ProcessLookupError:
		pass
	proc.communicate()
