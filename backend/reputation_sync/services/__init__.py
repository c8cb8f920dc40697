"""Reputation Sync - Services"""
