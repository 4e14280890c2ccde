"""Transparent upgradeable proxy deployment on the =nil; sharded chain."""
