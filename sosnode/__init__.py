"""SOS node launcher: a storage node with REST, web UI and WebDAV front ends."""

__version__ = "0.1.0"
