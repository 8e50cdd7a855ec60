"""Packaged data files (Jinja2 templates) shipped with homelabctl."""
