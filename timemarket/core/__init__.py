"""Marketplace core: configuration, errors, chain model and the offer ledger"""
