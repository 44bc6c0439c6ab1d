from donation_payments.sandbox.processor_server import SandboxProcessorServer
from donation_payments.sandbox.repository import InMemoryDonationRepository

__all__ = ["InMemoryDonationRepository", "SandboxProcessorServer"]
