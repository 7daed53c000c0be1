import inspect
import re
from typing import Any, Dict, Optional

import pulumi
import pulumi_gcp as gcp

from bootstrap_config import Config, GCPResource


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    """Resolve ``secret:`` and ``ref:`` strings anywhere inside an args tree."""
    if isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    if not isinstance(value, str):
        return value

    if value.startswith("secret:"):
        return pulumi.Config().require_secret(value[len("secret:"):])
    if value.startswith("ref:"):
        ref_res, _, ref_attr = value[len("ref:"):].partition(".")
        ref_attr = ref_attr or "id"
        if ref_res not in resources:
            raise ValueError(f"Referenced resource '{ref_res}' not found.")
        attr_val = getattr(resources[ref_res], ref_attr, None)
        if attr_val is None:
            raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
        return attr_val
    return value


def get_lookup_params(required_params: set, resolved_args: dict) -> dict:
    lookup_params = {}
    for param in required_params:
        snake_key = to_snake_case(param)
        if snake_key in resolved_args:
            lookup_params[param] = resolved_args[snake_key]
        elif param in resolved_args:
            lookup_params[param] = resolved_args[param]
    return lookup_params


def apply_common_parameters(config: Config, resolved_args: dict, init_sig: inspect.Signature) -> dict:
    """Inject stack-wide labels, region and project where the resource accepts them."""
    if "labels" in init_sig.parameters:
        if config.labels:
            resolved_args.setdefault("labels", dict(config.labels))
    else:
        resolved_args.pop("labels", None)

    for key, default in (("region", config.region), ("project", config.project)):
        if key in init_sig.parameters:
            resolved_args.setdefault(key, default)
        else:
            resolved_args.pop(key, None)
    return resolved_args


class DeclaredResourceBuilder:
    """Creates the ``gcp_resources`` entries of the stack description.

    Entries are applied in file order so ``ref:`` and ``depends_on`` may only
    point at identity-chain resources or entries declared earlier.
    """

    def __init__(self, config: Config, resources: Dict[str, Any],
                 name_for, admin_provider: Optional[gcp.Provider] = None):
        self.config = config
        self.resources = resources
        self.name_for = name_for
        self.admin_provider = admin_provider

    def _options(self, resource_cfg: GCPResource) -> pulumi.ResourceOptions:
        depends_on = []
        for dep in resource_cfg.depends_on:
            if dep not in self.resources:
                raise ValueError(f"Resource '{resource_cfg.name}' depends on unknown resource '{dep}'")
            depends_on.append(self.resources[dep])
        provider = self.admin_provider if resource_cfg.identity == "admin" else None
        return pulumi.ResourceOptions(provider=provider, depends_on=depends_on)

    def _lookup_existing(self, resource_cfg: GCPResource, module, class_name: str, resolved_args: dict):
        """Look up an existing resource instead of creating it.

        The ``_output`` form is preferred: it waits for unknown inputs, such as
        the admin provider's token, instead of blocking the program. Only the
        blocking form can fall back to creation when the lookup fails.
        """
        get_func_name = f"get_{to_snake_case(class_name)}"
        get_func = getattr(module, f"{get_func_name}_output", None)
        is_output = get_func is not None
        if get_func is None:
            get_func = getattr(module, get_func_name, None)
        if get_func is None:
            pulumi.log.warn(f"Function '{get_func_name}' not found for '{resource_cfg.type}'. "
                            f"Proceeding to create new resource '{resource_cfg.name}'.")
            return None

        sig = inspect.signature(get_func)
        get_known = {k for k in sig.parameters if k != "opts"}
        get_required = {k for k, param in sig.parameters.items()
                        if k != "opts" and param.default == param.empty}
        get_params = get_lookup_params(get_known, resolved_args)
        missing = get_required - set(get_params.keys())
        if missing:
            pulumi.log.warn(f"Missing required params {missing} for existing resource "
                            f"'{resource_cfg.name}'. Skipping the lookup attempt.")
            return None

        opts = None
        if resource_cfg.identity == "admin" and self.admin_provider is not None:
            opts = pulumi.InvokeOptions(provider=self.admin_provider)
        if is_output:
            pulumi.log.info(f"Looking up existing resource '{resource_cfg.name}' via "
                            f"'{get_func_name}_output' with {sorted(get_params)}")
            return get_func(**get_params, opts=opts)
        try:
            existing = get_func(**get_params, opts=opts)
        except Exception as e:
            pulumi.log.warn(f"Failed to retrieve existing resource '{resource_cfg.name}': {e}. "
                            "Proceeding with creation.")
            return None
        pulumi.log.info(f"Fetched existing resource '{resource_cfg.name}' via '{get_func_name}' with {get_params}")
        return existing

    def build_one(self, resource_cfg: GCPResource) -> Optional[Any]:
        args = dict(resource_cfg.args)
        is_existing = args.pop("existing", False)
        resolved_args = {key: resolve_value(value, self.resources) for key, value in args.items()}

        module_name, class_name = resource_cfg.type.rsplit(".", 1)
        module = getattr(gcp, module_name, None)
        if module is None:
            pulumi.log.warn(f"GCP module '{module_name}' not found. Skipping '{resource_cfg.name}'.")
            return None
        resource_class = getattr(module, class_name, None)
        if resource_class is None:
            pulumi.log.warn(f"Resource class '{class_name}' not found in module '{module_name}'. "
                            f"Skipping '{resource_cfg.name}'.")
            return None

        if is_existing:
            existing = self._lookup_existing(resource_cfg, module, class_name, resolved_args)
            if existing is not None:
                self.resources[resource_cfg.name] = existing
                return existing

        # Generated classes hide their keyword arguments behind overloads on __init__.
        init_sig = inspect.signature(getattr(resource_class, "_internal_init", resource_class.__init__))
        resolved_args = apply_common_parameters(self.config, resolved_args, init_sig)
        pulumi_name = resource_cfg.custom_name or self.name_for(resource_cfg.name)
        pulumi.log.debug(f"Final arguments for '{resource_cfg.name}': {sorted(resolved_args)}")
        instance = resource_class(pulumi_name, **resolved_args, opts=self._options(resource_cfg))
        self.resources[resource_cfg.name] = instance
        pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type}) as {resource_cfg.identity}")
        return instance

    def build(self) -> None:
        for resource_cfg in self.config.gcp_resources:
            self.build_one(resource_cfg)
