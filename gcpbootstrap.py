from typing import Any, Dict, List, Optional

import pulumi
import pulumi_gcp as gcp
import pulumiverse_time as time

from bootstrap_config import (
    ADMIN_PROVIDER_KEY,
    API_PROPAGATION_KEY,
    IAM_PROPAGATION_KEY,
    Config,
    ServiceAccountConfig,
    api_resource_key,
    required_apis,
)
from gcpresources import DeclaredResourceBuilder

# Consolidated list of common GCP region abbreviations
GCP_REGION_ABBREVIATIONS = {
    "asia-east1": "ae1",
    "asia-east2": "ae2",
    "asia-northeast1": "an1",
    "asia-northeast2": "an2",
    "asia-northeast3": "an3",
    "asia-south1": "as1",
    "asia-southeast1": "ase1",
    "asia-southeast2": "ase2",
    "australia-southeast1": "aus1",
    "australia-southeast2": "aus2",
    "europe-central2": "ec2",
    "europe-north1": "en1",
    "europe-west1": "ew1",
    "europe-west2": "ew2",
    "europe-west3": "ew3",
    "europe-west4": "ew4",
    "europe-west6": "ew6",
    "northamerica-northeast1": "nn1",
    "southamerica-east1": "se1",
    "us-central1": "usc1",
    "us-east1": "use1",
    "us-east4": "use4",
    "us-west1": "usw1",
    "us-west2": "usw2",
    "us-west3": "usw3",
    "us-west4": "usw4",
}

TOKEN_CREATOR_ROLE = "roles/iam.serviceAccountTokenCreator"

# Order matters: each stage relies on what the previous ones registered.
STAGES = (
    "enable_apis",
    "wait_for_api_propagation",
    "create_admin_service_account",
    "grant_admin_roles",
    "allow_impersonation",
    "wait_for_iam_propagation",
    "acquire_access_token",
    "create_admin_provider",
    "create_node_service_accounts",
    "create_declared_resources",
)


def member_for_email(email: str) -> str:
    """IAM member string for the identity behind ``email``."""
    if email.endswith(".gserviceaccount.com"):
        return f"serviceAccount:{email}"
    return f"user:{email}"


def role_slug(role: str) -> str:
    # The full path keeps predefined and custom roles with the same id apart.
    return role.replace("/", "-").replace(".", "-").lower()


def service_account_member(account: gcp.serviceaccount.Account) -> pulumi.Output[str]:
    return account.email.apply(lambda email: f"serviceAccount:{email}")


class GCPBootstrapBuilder:
    """Declares the project's identity chain.

    The seed identity enables APIs, creates the admin service account and
    grants itself permission to impersonate it. Once IAM has had time to
    propagate, a short-lived token for the admin account feeds a second
    provider, and everything after that is created as the admin account.
    """

    def __init__(self, config: Config):
        self.config = config
        self.resources: Dict[str, Any] = {}
        self.services: List[gcp.projects.Service] = []
        self.admin_role_bindings: List[gcp.projects.IAMMember] = []
        self.node_role_bindings: List[gcp.projects.IAMMember] = []
        self.node_accounts: Dict[str, gcp.serviceaccount.Account] = {}
        self.api_wait: Optional[time.Sleep] = None
        self.admin_account: Optional[gcp.serviceaccount.Account] = None
        self.impersonation_binding: Optional[gcp.serviceaccount.IAMMember] = None
        self.iam_wait: Optional[time.Sleep] = None
        self.access_token: Optional[pulumi.Output[str]] = None
        self.admin_provider: Optional[gcp.Provider] = None

    def get_abbreviation(self, region: str) -> str:
        return GCP_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.strip()
        service = self.config.service.strip()
        env = self.config.environment.strip()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def _admin_opts(self, depends_on: Optional[list] = None) -> pulumi.ResourceOptions:
        if self.admin_provider is None:
            raise RuntimeError("The admin provider must be created before admin-identity resources")
        return pulumi.ResourceOptions(provider=self.admin_provider, depends_on=depends_on or [])

    def seed_member(self) -> pulumi.Input[str]:
        if self.config.seed_member:
            return self.config.seed_member
        pulumi.log.info("No seed_member configured; impersonation is granted to the credentials running this update")
        return gcp.organizations.get_client_open_id_user_info_output().email.apply(member_for_email)

    def enable_apis(self):
        for api in required_apis(self.config):
            service = gcp.projects.Service(
                self.generate_resource_name(api_resource_key(api)),
                project=self.config.project,
                service=api,
                disable_on_destroy=False,
            )
            self.services.append(service)
            self.resources[api_resource_key(api)] = service
        pulumi.log.info(f"Enabling {len(self.services)} APIs on project {self.config.project}")

    def wait_for_api_propagation(self):
        self.api_wait = time.Sleep(
            self.generate_resource_name(API_PROPAGATION_KEY),
            create_duration=self.config.waits.api_propagation,
            opts=pulumi.ResourceOptions(depends_on=self.services),
        )
        self.resources[API_PROPAGATION_KEY] = self.api_wait

    def _account(self, account_cfg: ServiceAccountConfig, opts: pulumi.ResourceOptions) -> gcp.serviceaccount.Account:
        return gcp.serviceaccount.Account(
            self.generate_resource_name(f"sa-{account_cfg.name}"),
            account_id=account_cfg.account_id,
            display_name=account_cfg.display_name or account_cfg.account_id,
            description=account_cfg.description,
            project=self.config.project,
            opts=opts,
        )

    def create_admin_service_account(self):
        admin_cfg = self.config.admin_service_account
        self.admin_account = self._account(admin_cfg, pulumi.ResourceOptions(depends_on=[self.api_wait]))
        self.resources[admin_cfg.name] = self.admin_account
        pulumi.log.info(f"Declared admin service account '{admin_cfg.account_id}'")

    def grant_admin_roles(self):
        admin_cfg = self.config.admin_service_account
        member = service_account_member(self.admin_account)
        for role in admin_cfg.roles:
            binding = gcp.projects.IAMMember(
                self.generate_resource_name(f"{admin_cfg.name}-{role_slug(role)}"),
                project=self.config.project,
                role=role,
                member=member,
            )
            self.admin_role_bindings.append(binding)

    def allow_impersonation(self):
        self.impersonation_binding = gcp.serviceaccount.IAMMember(
            self.generate_resource_name(f"{self.config.admin_service_account.name}-token-creator"),
            service_account_id=self.admin_account.name,
            role=TOKEN_CREATOR_ROLE,
            member=self.seed_member(),
        )

    def wait_for_iam_propagation(self):
        self.iam_wait = time.Sleep(
            self.generate_resource_name(IAM_PROPAGATION_KEY),
            create_duration=self.config.waits.iam_propagation,
            opts=pulumi.ResourceOptions(depends_on=self.admin_role_bindings + [self.impersonation_binding]),
        )
        self.resources[IAM_PROPAGATION_KEY] = self.iam_wait

    def acquire_access_token(self):
        # The token lookup has no resource to depend on, so the target
        # account only resolves once the IAM wait has finished.
        target = pulumi.Output.all(self.admin_account.email, self.iam_wait.id).apply(lambda args: args[0])
        token = gcp.serviceaccount.get_account_access_token_output(
            target_service_account=target,
            scopes=self.config.impersonation.scopes,
            lifetime=self.config.impersonation.lifetime,
        )
        self.access_token = pulumi.Output.secret(token.access_token)

    def create_admin_provider(self):
        self.admin_provider = gcp.Provider(
            self.generate_resource_name(ADMIN_PROVIDER_KEY),
            access_token=self.access_token,
            project=self.config.project,
            region=self.config.region,
        )
        self.resources[ADMIN_PROVIDER_KEY] = self.admin_provider

    def create_node_service_accounts(self):
        for account_cfg in self.config.node_service_accounts:
            account = self._account(account_cfg, self._admin_opts())
            self.node_accounts[account_cfg.name] = account
            self.resources[account_cfg.name] = account
            member = service_account_member(account)
            for role in account_cfg.roles:
                binding = gcp.projects.IAMMember(
                    self.generate_resource_name(f"{account_cfg.name}-{role_slug(role)}"),
                    project=self.config.project,
                    role=role,
                    member=member,
                    opts=self._admin_opts(),
                )
                self.node_role_bindings.append(binding)
        if self.node_accounts:
            pulumi.log.info(f"Declared node service accounts: {', '.join(self.node_accounts)}")

    def create_declared_resources(self):
        DeclaredResourceBuilder(
            self.config,
            self.resources,
            self.generate_resource_name,
            admin_provider=self.admin_provider,
        ).build()

    def build(self):
        for stage in STAGES:
            pulumi.log.debug(f"Bootstrap stage: {stage}")
            getattr(self, stage)()

    def exports(self) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {
            "project": self.config.project,
            "enabled_apis": required_apis(self.config),
        }
        if self.admin_account is not None:
            outputs["admin_service_account_email"] = self.admin_account.email
        if self.node_accounts:
            outputs["node_service_account_emails"] = {
                name: account.email for name, account in self.node_accounts.items()
            }
        return outputs
