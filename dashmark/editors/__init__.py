"""Editors that change the picture."""
