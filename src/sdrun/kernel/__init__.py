"""Kernel layer - unit translation, the control bus and the sandbox entry point."""
