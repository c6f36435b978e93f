"""Configuration — stackwire.yml loading."""
