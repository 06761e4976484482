"""Domain models and pure rules: identity, severity and urgency."""
