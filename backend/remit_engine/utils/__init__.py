"""Remittance Engine - shared helpers"""
