"""
Template Registry & Device Set

Resolves the validated configuration document into the immutable poll
target table. Every semantic violation is collected before failing, so one
run reports all of them.
"""

from typing import Any

from modbus_influx.common.config import (
    MAX_REGISTER_ADDRESS,
    MAX_REGISTERS_PER_READ,
    AppConfig,
    Endpoint,
    HealthSettings,
    InfluxSettings,
    ModbusSettings,
    PollerSettings,
    PollTarget,
    PollTargetSet,
    ReadBlock,
    RegisterField,
    SinkApi,
    SinkSettings,
    Template,
)
from modbus_influx.common.exceptions import ConfigError
from modbus_influx.common.logging_setup import get_service_logger
from .document import ConfigDocument, TemplateModel
from .settings import EnvSettings

logger = get_service_logger("config.registry")


def build_read_blocks(
    fields: list[RegisterField],
    max_count: int = MAX_REGISTERS_PER_READ,
) -> tuple[ReadBlock, ...]:
    """
    Coalesce fields into request ranges.

    Fields are sorted by address; a block grows while its whole span (gaps
    included) stays within max_count registers.
    """
    if not fields:
        return ()

    ordered = sorted(fields, key=lambda f: f.address)
    blocks: list[ReadBlock] = []
    start = ordered[0].address
    end = ordered[0].end_address
    group: list[RegisterField] = [ordered[0]]

    for register in ordered[1:]:
        if register.end_address - start + 1 <= max_count:
            group.append(register)
            end = max(end, register.end_address)
        else:
            blocks.append(ReadBlock(address=start, count=end - start + 1, fields=tuple(group)))
            start = register.address
            end = register.end_address
            group = [register]

    blocks.append(ReadBlock(address=start, count=end - start + 1, fields=tuple(group)))
    return tuple(blocks)


def _build_template(name: str, model: TemplateModel, errors: list[str]) -> Template:
    fields = [
        RegisterField(
            address=entry.addr,
            name=entry.name,
            data_type=entry.data_type,
            tags=dict(entry.tags),
        )
        for entry in model.input_registers
    ]

    if not fields:
        logger.warning(f"Template '{name}' declares no input registers")

    previous: RegisterField | None = None
    for register in sorted(fields, key=lambda f: f.address):
        if register.end_address > MAX_REGISTER_ADDRESS:
            errors.append(
                f"templates.{name}: field '{register.name}' ({register.data_type.value} at "
                f"{register.address}) runs past register {MAX_REGISTER_ADDRESS}"
            )
        if previous is not None and register.address <= previous.end_address:
            errors.append(
                f"templates.{name}: field '{register.name}' (registers {register.address}.."
                f"{register.end_address}) overlaps '{previous.name}' (registers "
                f"{previous.address}..{previous.end_address})"
            )
        if previous is None or register.end_address > previous.end_address:
            previous = register

    return Template(
        name=name,
        scan_interval=model.scan_interval,
        fields=tuple(fields),
        read_blocks=build_read_blocks(fields),
        tags=dict(model.tags),
        word_order=model.word_order,
    )


def build_templates(document: ConfigDocument, errors: list[str]) -> dict[str, Template]:
    """Resolve every template of the document (violations appended to errors)"""
    return {
        name: _build_template(name, model, errors)
        for name, model in document.templates.items()
    }


def _build_targets(
    document: ConfigDocument,
    templates: dict[str, Template],
    errors: list[str],
) -> list[PollTarget]:
    targets: list[PollTarget] = []
    seen: dict[str, int] = {}

    for index, device in enumerate(document.devices):
        where = f"devices[{index}] (id={device.id!r})"

        # 1 and "1" are distinct identities for TOML, but not as tag values
        key = str(device.id)
        if key in seen:
            errors.append(f"{where}: duplicate identity, already used by devices[{seen[key]}]")
        else:
            seen[key] = index

        template = templates.get(device.template)
        if template is None:
            errors.append(f"{where}: unknown template '{device.template}'")

        unit_id = device.unit_id
        if unit_id is None:
            if isinstance(device.id, int):
                unit_id = device.id
                if not 0 <= unit_id <= 255:
                    errors.append(
                        f"{where}: identity {device.id} is not a valid unit id (0..255), "
                        "set unit_id explicitly"
                    )
            else:
                errors.append(f"{where}: string identity requires an explicit unit_id")

        if template is None or unit_id is None:
            continue

        targets.append(PollTarget(
            identity=device.id,
            unit_id=unit_id,
            endpoint=Endpoint(
                host=device.hostname or document.modbus.hostname,
                port=device.port or document.modbus.port,
            ),
            template=template,
            device_tags=dict(device.tags),
        ))

    return targets


def _resolve(document: ConfigDocument, errors: list[str]) -> tuple[dict[str, Template], list[PollTarget]]:
    templates = build_templates(document, errors)
    targets = _build_targets(document, templates, errors)
    return templates, targets


def _as_document(document: ConfigDocument | dict[str, Any]) -> ConfigDocument:
    if isinstance(document, ConfigDocument):
        return document
    # Imported here, loader depends on this module
    from .loader import parse_document
    return parse_document(document)


def _fail(errors: list[str]) -> None:
    logger.warning(
        f"Config validation failed: {len(errors)} errors",
        extra={"errors": errors},
    )
    raise ConfigError(f"{len(errors)} configuration error(s)", errors=errors)


def build_poll_targets(document: ConfigDocument | dict[str, Any]) -> PollTargetSet:
    """
    Build the poll target table.

    Args:
        document: Validated document, or a raw mapping to validate first

    Raises:
        ConfigError: Listing every violation found
    """
    document = _as_document(document)
    errors: list[str] = []
    _, targets = _resolve(document, errors)
    if errors:
        _fail(errors)
    return PollTargetSet(targets)


def _build_influx(
    document: ConfigDocument,
    env: EnvSettings | None,
    errors: list[str],
) -> InfluxSettings | None:
    if document.influxdb2 and document.influxdb:
        errors.append("configure exactly one of [influxdb2] or [influxdb], not both")
        return None

    if document.influxdb2:
        section = document.influxdb2
        token = (env.influx_token if env else None) or section.auth_token
        if not token:
            logger.warning("No InfluxDB auth token configured, writes will be unauthenticated")
        return InfluxSettings(
            api=SinkApi.V2,
            hostname=section.hostname,
            organization=section.organization,
            bucket=section.bucket,
            auth_token=token,
        )

    if document.influxdb:
        section = document.influxdb
        password = (env.influx_password if env else None) or section.password
        return InfluxSettings(
            api=SinkApi.V1,
            hostname=section.hostname,
            database=section.database,
            username=section.username,
            password=password,
        )

    errors.append("missing sink section: configure [influxdb2] or [influxdb]")
    return None


def build_app_config(
    document: ConfigDocument | dict[str, Any],
    env: EnvSettings | None = None,
) -> AppConfig:
    """
    Resolve a document into the full runtime configuration.

    Args:
        document: Validated document, or a raw mapping to validate first
        env: Environment overrides for sink credentials

    Raises:
        ConfigError: Listing every violation found
    """
    document = _as_document(document)
    errors: list[str] = []
    templates, targets = _resolve(document, errors)
    influx = _build_influx(document, env, errors)

    if errors:
        _fail(errors)

    if not targets:
        logger.warning("No devices configured, nothing will be polled")

    return AppConfig(
        modbus=ModbusSettings(
            hostname=document.modbus.hostname,
            port=document.modbus.port,
            timeout=document.modbus.timeout,
        ),
        influxdb=influx,
        targets=PollTargetSet(targets),
        templates=templates,
        sink=SinkSettings(
            batch_size=document.sink.batch_size,
            flush_interval=document.sink.flush_interval,
            max_buffer=document.sink.max_buffer,
            retry_backoff=tuple(document.sink.retry_backoff),
            timeout=document.sink.timeout,
        ),
        poller=PollerSettings(max_concurrency=document.poller.max_concurrency),
        health=(
            HealthSettings(host=document.health.host, port=document.health.port)
            if document.health else None
        ),
    )
