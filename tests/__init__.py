"""Live preview gateway tests."""
