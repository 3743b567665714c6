"""Tests for the Quill engine."""
