"""Tests for the ccwrap session engine."""
