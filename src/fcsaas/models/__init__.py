"""Shared data types: enums, tier profiles, subnet pool math and API DTOs."""
