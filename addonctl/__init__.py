"""Install cluster add-ons together with the cloud resources they depend on."""

__version__ = "0.1.0"
