"""Sandbox executor: runs operator plugin code out of process."""
