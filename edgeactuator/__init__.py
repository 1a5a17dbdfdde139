"""Greengrass-discovered device that reconciles its actuator against a device shadow."""

__version__ = "0.1.0"
