"""andesite command-line interface."""
