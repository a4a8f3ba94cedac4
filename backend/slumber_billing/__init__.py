"""Subscription status reconciliation service"""
