"""stackwire — cross-stack resource provisioning and workload wiring."""

__version__ = "0.1.0"
