"""
Configuration for VM Operator.

Reads from environment variables (prefix VMOP_) with sensible defaults.
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_prefix="VMOP_")

    # vCenter connection
    vcenter_host: str = "vcenter.example.com"
    vcenter_port: int = 443
    vcenter_user: str = "administrator@vsphere.local"
    vcenter_password: str = ""
    verify_ssl: bool = False
    datacenter: str = ""

    # Declarative store API
    store_url: str = "http://127.0.0.1:8001"
    store_token: str = ""
    store_timeout_seconds: int = 10

    # Controller
    worker_count: int = 4
    resync_interval_seconds: int = 600
    poll_interval_seconds: int = 10
    remote_call_timeout_seconds: int = 300
    reconcile_timeout_seconds: int = 900
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    status_update_retries: int = 5

    # Feature gates
    instance_storage_enabled: bool = True
    workload_domain_isolation_enabled: bool = False
    fault_domains_enabled: bool = True

    # Admission webhooks
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 9878
    webhook_ssl_cert: str = "/tmp/k8s-webhook-server/serving-certs/tls.crt"
    webhook_ssl_key: str = "/tmp/k8s-webhook-server/serving-certs/tls.key"
    webhook_timeout_seconds: float = 0.3
    webhook_failure_policy: str = "Fail"
    # Extra identities allowed to manage instance storage claims
    privileged_users: List[str] = []

    # VM defaults
    json_extra_config: str = ""
    min_cpu_freq_mhz: int = 0

    # Logging
    log_level: str = "INFO"


settings = Settings()
