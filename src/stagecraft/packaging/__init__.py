"""
The `packaging` sub-package turns a finished staging root into an installable
Debian binary package and reads such packages back.

This includes:
- Deterministic `ar` and tar.gz writers (stable ordering, ownership and timestamps).
- The Packager, which validates the control metadata and installed-files tree.
- A reader used by `stagecraft inspect`.
"""
