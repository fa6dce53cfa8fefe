"""
Issuer domain helpers for IRSA.

The issuer "domain" is the issuer URL without its scheme, which is the form IAM
uses in OIDC provider ARNs and in trust policy condition keys.
"""

from __future__ import annotations


def clean_issuer(url: str) -> str:
    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            url = url[len(scheme) :]
    return url.rstrip("/")


def irsa_domain(base_domain: str, region: str, account_id: str, cluster_name: str) -> str:
    """
    Domain of the issuer serving a workload cluster's service account keys.

    China regions have no CloudFront in front of the key bucket, so the bucket's
    regional S3 endpoint is the issuer there.
    """
    if region.startswith("cn-"):
        return f"s3.{region}.amazonaws.com.cn/{account_id}-g8s-{cluster_name}-oidc-pod-identity-v3"

    if not base_domain:
        return ""

    return f"irsa.{base_domain}"
