"""Appointment reminder scheduling, rendering and delivery."""
