"""Backend services for the consulting agency platform."""
