"""Form submission broker for an external record-keeping system."""
