"""Shared kernel: logging and HTTP plumbing used by every module."""
