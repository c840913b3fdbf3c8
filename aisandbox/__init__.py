"""Provision a GPU node and bootstrap a vLLM + Open WebUI stack on it."""

__version__ = "0.1.0"
