"""Payment gateway integration and payment-to-subscription reconciliation."""
