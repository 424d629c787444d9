"""Command line interface built on click."""
