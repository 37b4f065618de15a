"""Desired-state resource definitions."""

from infra_provisioner.resources.base import Resource
from infra_provisioner.resources.schema import CompareStrategy, ResourceSchema

__all__ = ["CompareStrategy", "Resource", "ResourceSchema"]
