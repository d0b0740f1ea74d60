# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from pathlib import Path

from srcpkg.manifest import PostInstallCheck
from srcpkg.validate import validate_install


def _tree(root: Path) -> list[tuple[str, int]]:
	return sorted((str(p.relative_to(root)), p.stat().st_mode) for p in root.rglob("*"))


def _install(root: Path) -> Path:
	(root / "bin").mkdir(parents=True)
	exe = root / "bin" / "tool"
	exe.write_text("#!/bin/sh\n", encoding="utf-8")
	exe.chmod(0o755)
	doc = root / "share" / "doc.txt"
	doc.parent.mkdir(parents=True)
	doc.write_text("doc\n", encoding="utf-8")
	return root


def test_all_checks_pass(tmp_path: Path) -> None:
	root = _install(tmp_path / "inst")
	checks = [
		PostInstallCheck(kind="exists", target="share/doc.txt"),
		PostInstallCheck(kind="executable", target="bin/{name}"),
		PostInstallCheck(kind="exists", target="{prefix}/bin"),
	]
	res = validate_install(root, checks, {"name": "tool", "version": "1.0.0", "prefix": str(root)})
	assert res.success
	assert res.installed_path == str(root)
	assert [c.passed for c in res.validation_report] == [True, True, True]


def test_failures_do_not_short_circuit(tmp_path: Path) -> None:
	root = _install(tmp_path / "inst")
	checks = [
		PostInstallCheck(kind="exists", target="bin/missing"),
		PostInstallCheck(kind="executable", target="share/doc.txt"),
		PostInstallCheck(kind="executable", target="bin"),
		PostInstallCheck(kind="executable", target="bin/tool"),
	]
	res = validate_install(root, checks, {"name": "tool", "version": "1.0.0"})
	assert not res.success
	assert [c.detail for c in res.validation_report] == ["missing", "not executable", "is a directory", "executable"]
	assert [c.label for c in res.failed_checks] == [
		"exists:bin/missing",
		"executable:share/doc.txt",
		"executable:bin",
	]


def test_validation_does_not_modify_install(tmp_path: Path) -> None:
	root = _install(tmp_path / "inst")
	before = _tree(root)
	validate_install(
		root,
		[PostInstallCheck(kind="exists", target="nope"), PostInstallCheck(kind="executable", target="bin/tool")],
		{"name": "tool", "version": "1.0.0"},
	)
	assert _tree(root) == before


def test_empty_check_list_succeeds(tmp_path: Path) -> None:
	res = validate_install(tmp_path, [], {"name": "tool", "version": "1.0.0"})
	assert res.success
	assert res.validation_report == ()


def test_unrenderable_target_fails_its_check_only(tmp_path: Path) -> None:
	root = _install(tmp_path / "inst")
	res = validate_install(
		root,
		[PostInstallCheck(kind="exists", target="bin/{arch}"), PostInstallCheck(kind="exists", target="bin/tool")],
		{"name": "tool", "version": "1.0.0"},
	)
	assert [c.passed for c in res.validation_report] == [False, True]
	assert res.validation_report[0].path is None


def test_dangling_symlink_does_not_count_as_present(tmp_path: Path) -> None:
	root = tmp_path / "inst"
	(root / "bin").mkdir(parents=True)
	(root / "bin" / "tool").symlink_to(root / "libexec" / "tool-real")
	res = validate_install(
		root,
		[PostInstallCheck(kind="exists", target="bin/tool"), PostInstallCheck(kind="executable", target="bin/tool")],
		{"name": "tool", "version": "1.0.0"},
	)
	assert not res.success
	assert [c.detail for c in res.validation_report] == ["missing", "missing"]
