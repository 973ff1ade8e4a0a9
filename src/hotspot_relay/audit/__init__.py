"""Action audit trail."""
