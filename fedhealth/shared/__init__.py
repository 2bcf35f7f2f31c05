"""Data model, collaborator interfaces and shared infrastructure."""
