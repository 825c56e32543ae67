"""StickyVault: markdown sticky notes in a local vault, mirrored to Dropbox."""

from stickyvault.version import get_version

__version__ = get_version()
