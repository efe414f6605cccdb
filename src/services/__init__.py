"""Billing engine services: generation, fines, allocation and payment intake."""
