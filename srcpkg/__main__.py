# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from srcpkg.cli import main

if __name__ == "__main__":
	raise SystemExit(main())
