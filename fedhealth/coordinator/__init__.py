"""Reference coordinator service."""
