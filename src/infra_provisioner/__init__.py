"""Terraform-style plan/apply reconciliation engine for AWS resources."""

__version__ = "0.1.0"
