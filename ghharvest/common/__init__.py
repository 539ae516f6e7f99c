"""Shared helpers used across ghharvest packages."""
