"""
ClinicSession - API Gateway

Request middleware and role-based access control policy.
"""
