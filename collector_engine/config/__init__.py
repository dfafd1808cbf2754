"""Configuration models for collector-engine."""

from collector_engine.config.settings import CollectorConfig

__all__ = ["CollectorConfig"]
