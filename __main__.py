import pulumi

from bootstrap_config import Config, load_config
from gcpbootstrap import GCPBootstrapBuilder


def main():
    # Load YAML configuration.
    config_data = load_config("config.yaml")

    try:
        builder = GCPBootstrapBuilder(Config.from_dict(config_data))
    except Exception as e:
        pulumi.log.error(f"Failed to initialize GCPBootstrapBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.exports().items():
        pulumi.export(name, value)

    # Export resource IDs if available.
    for name, resource in builder.resources.items():
        try:
            pulumi.export(f"{name}_id", resource.id)
        except Exception as e:
            pulumi.log.warn(f"Failed to export resource '{name}': {e}")


if __name__ == "__main__":
    main()
