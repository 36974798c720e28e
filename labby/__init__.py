"""Provisioning and cleanup orchestration for ephemeral multi-service labs."""
