"""Configuration: runtime settings and product tier tables."""
