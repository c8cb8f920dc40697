"""Reputation Sync - off-chain identity store reconciliation with the identity ledger"""
