"""Dispute resolution for contested milestones."""
