"""Tests for CourseFinder."""
