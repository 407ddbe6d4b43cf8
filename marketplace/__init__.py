"""
Marketplace API package.

A FastAPI service for user accounts and product listings, with product
images kept in S3 and served through signed URLs, plus a small client and
CLI for talking to it.
"""
