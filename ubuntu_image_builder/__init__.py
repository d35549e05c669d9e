"""ubuntu-image builder (Python, state-driven).

Core design goals:
- Resumable build steps with an on-disk checkpoint
- Exact disk layout arithmetic for every gadget volume
- External tools (snap, live-build, mkfs, sfdisk) driven, never reimplemented
- Centralized logging
"""

__all__ = []
