"""Election transaction services."""
