"""
Engines — pluggable provisioning backends behind a single contract.

    from stackwire.adapters.base import ProvisioningEngine
    from stackwire.adapters.memory import InMemoryEngine
"""
