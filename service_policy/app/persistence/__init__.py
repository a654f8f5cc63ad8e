"""
Persistence package for the Policy Service (PostgreSQL via asyncpg).
"""
