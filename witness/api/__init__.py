"""HTTP boundary of the verification core."""
