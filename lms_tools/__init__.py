"""Back-office tooling for the learning platform (Supabase + Google Drive)."""

__version__ = "0.1.0"
