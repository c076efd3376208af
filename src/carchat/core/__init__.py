"""Core infrastructure: configuration, logging, errors, audio and model backends."""
