"""External marketplace integrations."""
