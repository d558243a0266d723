"""Scrap pickup marketplace backend."""
