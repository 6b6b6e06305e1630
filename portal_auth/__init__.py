"""Authentication, session and one-time-passcode core for the case portal."""
