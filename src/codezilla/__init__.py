"""Codezilla - runtime state engine for agent CLI threads."""

try:
    from ._version import __version__
except ImportError:
    try:
        from importlib.metadata import version

        __version__ = version("codezilla")
    except Exception:
        __version__ = "0.0.0+unknown"
