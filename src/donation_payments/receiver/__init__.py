from donation_payments.receiver.server import WebhookReceiverServer

__all__ = ["WebhookReceiverServer"]
