"""CreativeWriter API - subscription lifecycle and usage metering."""

__version__ = "1.0.0"
