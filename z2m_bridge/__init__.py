"""Zigbee2MQTT to Homey capability bridge."""

__version__ = "0.4.0"
