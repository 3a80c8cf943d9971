import logging
import os
import sys
from typing import Dict, List

import yaml

from .errors import ConditionError, ConfigError
from .evaluators import RULE_TYPES, build_interpreter
from .models import (
    APPROVAL_TRIGGERS,
    RULE_ACTIONS,
    TARGET_TYPES,
    Instance,
    RouterRule,
    User,
    UserQuota,
    parse_condition,
)
from .quota import validate_quota

CONFIG_PATH = os.environ.get('PULSARR_CONFIG', os.path.join(os.getcwd(), 'config.yaml'))

REQUIRED_KEYS = [
    'DATABASE_URL',
    'DRY_RUN',
]

INSTANCE_SECTIONS = {
    'radarr': 'RADARR_INSTANCES',
    'sonarr': 'SONARR_INSTANCES',
}


# =========================
# Config loading and checks
# =========================
def load_config(path: str) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logging.critical(f"Configuration file 'config.yaml' not found at {path}.")
        sys.exit(1)
    except yaml.YAMLError as e:
        logging.critical(f"Error parsing 'config.yaml': {e}")
        sys.exit(1)

    if not isinstance(config, dict):
        logging.critical("Configuration root must be a mapping.")
        sys.exit(1)

    missing = [k for k in REQUIRED_KEYS if k not in config]
    if missing:
        logging.critical(f"Missing required configuration keys: {', '.join(missing)}")
        sys.exit(1)

    if not isinstance(config.get('DRY_RUN'), bool):
        logging.critical("DRY_RUN must be a boolean.")
        sys.exit(1)

    return config


def section(cfg: dict, key: str) -> dict:
    value = cfg.get(key) or {}
    return value if isinstance(value, dict) else {}


# =========================
# Parsing
# =========================
def parse_instances(cfg: dict) -> List[Instance]:
    instances: List[Instance] = []
    for instance_type, key in INSTANCE_SECTIONS.items():
        for entry in cfg.get(key) or []:
            instances.append(Instance.from_dict(entry, instance_type))
    return instances


def parse_users(cfg: dict) -> List[User]:
    return [
        User(id=int(u['id']), name=str(u.get('name') or u['id']),
             requires_approval=bool(u.get('requires_approval', False)))
        for u in cfg.get('USERS') or []
    ]


def parse_quotas(cfg: dict) -> List[UserQuota]:
    return [
        UserQuota(
            user_id=int(q['user_id']),
            content_type=q.get('content_type', ''),
            quota_type=q.get('quota_type', ''),
            quota_limit=q.get('quota_limit'),
            bypass_approval=bool(q.get('bypass_approval', False)),
        )
        for q in cfg.get('USER_QUOTAS') or []
    ]


def parse_rules(cfg: dict) -> List[RouterRule]:
    return [RouterRule.from_dict(r) for r in cfg.get('ROUTER_RULES') or []]


# =========================
# Validation
# =========================
def validate_instances(cfg: dict) -> bool:
    valid = True
    for instance_type, key in INSTANCE_SECTIONS.items():
        entries = cfg.get(key) or []
        if not isinstance(entries, list):
            logging.error(f"{key} must be a list.")
            valid = False
            continue
        seen = set()
        defaults = 0
        for entry in entries:
            if not isinstance(entry, dict):
                logging.error(f"Each entry in {key} must be a mapping.")
                valid = False
                continue
            name = entry.get('name', '<unnamed>')
            if not isinstance(entry.get('id'), int) or isinstance(entry.get('id'), bool):
                logging.error(f"{instance_type} instance '{name}' missing integer id.")
                valid = False
            elif entry['id'] in seen:
                logging.error(f"Duplicate {instance_type} instance id {entry['id']}.")
                valid = False
            else:
                seen.add(entry['id'])
            if not entry.get('root_folder'):
                logging.error(f"{instance_type} instance '{name}' missing root_folder.")
                valid = False
            if entry.get('is_default'):
                defaults += 1
        if defaults > 1:
            logging.error(f"More than one default {instance_type} instance is configured.")
            valid = False
    return valid


def validate_users(cfg: dict) -> bool:
    valid = True
    for entry in cfg.get('USERS') or []:
        if not isinstance(entry, dict) or not isinstance(entry.get('id'), int):
            logging.error(f"User entry {entry!r} missing integer id.")
            valid = False
    return valid


def validate_quotas(cfg: dict) -> bool:
    valid = True
    user_ids = {u.get('id') for u in cfg.get('USERS') or [] if isinstance(u, dict)}
    for entry in cfg.get('USER_QUOTAS') or []:
        if not isinstance(entry, dict) or not isinstance(entry.get('user_id'), int):
            logging.error(f"Quota entry {entry!r} missing integer user_id.")
            valid = False
            continue
        if entry['user_id'] not in user_ids:
            logging.error(f"Quota for unknown user {entry['user_id']}.")
            valid = False
        try:
            validate_quota(parse_quotas({'USER_QUOTAS': [entry]})[0])
        except ConfigError as e:
            logging.error(f"Quota for user {entry['user_id']}: {e}")
            valid = False
    return valid


def validate_rule(rule: RouterRule, instances: Dict[str, set], interpreter) -> List[str]:
    """Return the problems with one rule (empty when valid)."""
    problems = []
    if rule.type not in RULE_TYPES:
        problems.append(f"unknown type '{rule.type}'")
    if rule.target_type not in TARGET_TYPES:
        problems.append(f"target_type must be radarr or sonarr, got '{rule.target_type}'")
    elif rule.target_instance_id not in instances.get(rule.target_type, set()):
        problems.append(f"target {rule.target_type} instance {rule.target_instance_id} does not exist")
    if rule.action not in RULE_ACTIONS:
        problems.append(f"action must be one of {', '.join(RULE_ACTIONS)}")
    if rule.approval_trigger not in APPROVAL_TRIGGERS:
        problems.append(f"approval_trigger must be one of {', '.join(APPROVAL_TRIGGERS)}")

    if rule.type == 'conditional':
        raw = (rule.criteria or {}).get('condition')
        if raw is None:
            problems.append("conditional rule has no 'condition'")
        else:
            try:
                problem = interpreter.validate(parse_condition(raw))
            except ConditionError as e:
                problem = str(e)
            if problem:
                problems.append(f"invalid condition: {problem}")
    elif rule.type in RULE_TYPES and not rule.criteria:
        problems.append("criteria must not be empty")
    return problems


def validate_rules(cfg: dict) -> bool:
    valid = True
    instances: Dict[str, set] = {
        t: {e.get('id') for e in cfg.get(k) or [] if isinstance(e, dict)}
        for t, k in INSTANCE_SECTIONS.items()
    }
    interpreter = build_interpreter()
    seen = set()
    for entry in cfg.get('ROUTER_RULES') or []:
        try:
            rule = RouterRule.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            logging.error(f"Router rule {entry.get('name', entry) if isinstance(entry, dict) else entry!r} "
                          f"is malformed: {e}")
            valid = False
            continue
        if rule.id in seen:
            logging.error(f"Duplicate router rule id {rule.id}.")
            valid = False
        seen.add(rule.id)
        for problem in validate_rule(rule, instances, interpreter):
            logging.error(f"Router rule '{rule.name}' (id={rule.id}): {problem}")
            valid = False
    return valid


def check_configuration(cfg: dict) -> bool:
    results = [
        validate_instances(cfg),
        validate_users(cfg),
        validate_quotas(cfg),
        validate_rules(cfg),
    ]
    return all(results)


def validate_configuration(cfg: dict) -> None:
    if not check_configuration(cfg):
        logging.critical("Configuration validation failed.")
        sys.exit(1)
    logging.info("Configuration loaded and validated successfully.")


# =========================
# Seeding the store
# =========================
def seed_store(store, cfg: dict) -> None:
    """Upsert configured instances, users, quotas and rules into ``store``."""
    instances = parse_instances(cfg)
    for instance in instances:
        store.upsert_instance(instance)
    users = parse_users(cfg)
    for user in users:
        store.upsert_user(user)
    for quota in parse_quotas(cfg):
        store.set_user_quota(quota)
    rules = parse_rules(cfg)
    for rule in rules:
        store.upsert_router_rule(rule)
    removed = store.delete_router_rules_except([r.id for r in rules])
    logging.info(
        f"Seeded {len(instances)} instance(s), {len(users)} user(s) and {len(rules)} rule(s)"
        + (f"; removed {removed} stale rule(s)" if removed else "")
    )
