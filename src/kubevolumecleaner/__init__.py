"""Kubernetes controller that tracks StatefulSet ownership of
PersistentVolumeClaims and deletes the claims that are orphaned.
"""
