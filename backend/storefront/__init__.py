"""Storefront shipping backend."""
