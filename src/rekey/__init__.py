"""rekey - bulk remediation of object keys in S3 buckets."""

__version__ = "0.1.0"
