"""Category catalogue (one level of sub-categories)."""
