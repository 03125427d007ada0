"""Node-side volume staging, publishing, sizing and validation helpers for EBS block volumes."""

__version__ = "1.1.1"
__all__ = ["devices", "mount", "node", "util", "validation", "version"]