"""Command line tools for nvpatch."""
