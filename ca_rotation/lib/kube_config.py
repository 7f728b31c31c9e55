"""Kubernetes API client bootstrap."""

import logging

from kubernetes import client, config

logger = logging.getLogger(__name__)


def load_api_client(kubeconfig_path: str | None = None) -> client.ApiClient:
    """Return an ApiClient from an explicit kubeconfig, in-cluster config, or the default kubeconfig."""
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path)
    else:
        try:
            config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Using kubeconfig Kubernetes configuration")
    return client.ApiClient()
