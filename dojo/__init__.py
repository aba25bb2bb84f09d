"""Dojo administration: classes, families, events and payments on Supabase."""

__version__ = '0.4.0'
