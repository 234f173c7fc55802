"""Loaders that turn run-history files into analytics batches."""
