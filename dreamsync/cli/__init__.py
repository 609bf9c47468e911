"""dreamsync command-line interface."""
