"""Exchange access: participant visibility, delegation and reconciliation."""
