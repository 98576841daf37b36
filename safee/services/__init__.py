"""Supporting services: audit trail and notifications."""
