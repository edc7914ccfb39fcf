"""corelay - relay for live model sessions with sandboxed tool plugins."""

__version__ = "0.1.0"
