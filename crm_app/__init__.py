"""Contact management application package."""
