"""Worksheet service -> PostgreSQL (Supabase) sync tool."""

__version__ = "0.1.0"
