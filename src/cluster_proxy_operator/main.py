import kopf
import logging
from cluster_proxy_operator.config import Config, OperatorSettings
from cluster_proxy_operator.controllers.configuration_controller import ConfigurationReconciler
from cluster_proxy_operator.services import self_signer
from cluster_proxy_operator.services.csr_signer import custom_signer_with_expiry
from cluster_proxy_operator.utils.kubernetes import KubernetesUtils
from cluster_proxy_operator.utils.log_config import configure_logging, setup_logger


class ProxyOperator:
    def __init__(self):
        self.logger = setup_logger('cluster-proxy-operator')
        self.clients = None
        self.settings = None
        self.signer = None
        self.controller = None
        self.csr_signer = None

    def initialize(self) -> None:
        """Initialize operator dependencies."""
        configure_logging()
        self.clients = Config.initialize_kubernetes()
        self.settings = OperatorSettings.from_env(
            supports_v1_csr=KubernetesUtils.supports_v1_csr(self.clients['apis_api'])
        )
        self._initialize_signer()
        self._initialize_controller()

    def _initialize_signer(self) -> None:
        """Load or generate the CA shared by every rotation target."""
        self.signer = self_signer.load_or_generate(
            self.clients['core_v1_api'],
            self.settings.signer_secret_namespace,
            self.settings.signer_secret_name
        )
        self.csr_signer = custom_signer_with_expiry(
            Config.api.PROXY_AGENT_SIGNER_NAME,
            self.signer,
            self.settings.cert_validity
        )

    def _initialize_controller(self) -> None:
        self.controller = ConfigurationReconciler(self.clients, self.signer, self.settings)
        self.logger.info(
            f"Operator initialized (CA secret {self.settings.signer_secret_namespace}/"
            f"{self.settings.signer_secret_name}, CSR v1 supported: {self.settings.supports_v1_csr})"
        )

    def configure_settings(self, settings: kopf.OperatorSettings) -> None:
        """Configure operator settings."""
        settings.watching.server_timeout = 60
        settings.posting.level = logging.INFO
        settings.posting.enabled = True
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=Config.api.PROXY_GROUP)
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=Config.api.PROXY_GROUP)

        self._configure_logging_levels()

    def _configure_logging_levels(self) -> None:
        """Configure logging levels for different components."""
        logging_config = {
            'kopf.objects': logging.WARNING,
            'kopf.activities': logging.INFO,
            'kopf.activities.service': logging.WARNING,
            'kopf.activities.authenticator': logging.WARNING
        }

        for logger_name, level in logging_config.items():
            logging.getLogger(logger_name).setLevel(level)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_):
    """
    Configure the operator on startup.

    memo.controller serves the configuration handlers. memo.csr_signer is the
    signing callback exported for the agent registration flow: it signs agent
    CSRs addressed to the proxy-agent signer and returns None for other signers.
    """
    operator = ProxyOperator()
    operator.initialize()
    operator.configure_settings(settings)
    memo.controller = operator.controller
    memo.csr_signer = operator.csr_signer


def run() -> None:
    kopf.run(clusterwide=True)


if __name__ == "__main__":
    run()
