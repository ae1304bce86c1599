"""Request platform concerns: authenticated account context."""
