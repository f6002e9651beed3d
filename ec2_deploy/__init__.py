"""Provision an EC2 Docker host, point Route 53 at it and deploy a Compose project."""

__version__ = "0.1.0"
