"""Library circulation service: instances, loans, fines and reservations."""
