"""Form template and candidate invitation service."""
