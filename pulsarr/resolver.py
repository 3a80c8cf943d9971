"""
Decision resolver: runs every evaluator family for one item and merges
their matches into one RouterDecision per target instance.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    CONTENT_TYPES,
    ContentItem,
    RouterDecision,
    RouterRule,
    RoutingContext,
    RoutingDecision,
)

# Families whose matching depends on looked-up metadata.
METADATA_FAMILIES = ('year', 'season', 'language', 'certification', 'conditional')


class DecisionResolver:
    def __init__(self, store, evaluators: Sequence, lookup=None, plugins: Optional[Sequence] = None,
                 parallel: bool = False, max_workers: int = 4):
        self.store = store
        self.evaluators = list(evaluators)
        self.lookup = lookup
        self.plugins = list(plugins or [])
        self.parallel = parallel
        self.max_workers = max_workers

    def run_list(self) -> List:
        """Evaluators in priority order, with plugin-backed families swapped in."""
        replaced = {p.rule_type: p for p in self.plugins}
        chosen = [replaced.get(e.rule_type, e) for e in self.evaluators]
        chosen.extend(p for p in self.plugins if p not in chosen)
        return sorted(chosen, key=lambda e: e.priority, reverse=True)

    # -------------------------
    # Evaluation
    # -------------------------
    def _run_one(self, evaluator, item: ContentItem, context: RoutingContext,
                 extra: dict) -> Optional[List[RoutingDecision]]:
        try:
            if not evaluator.can_evaluate(item, context):
                logging.debug(f"{evaluator.name}: nothing to evaluate", extra=extra)
                return None
            return evaluator.evaluate(item, context)
        except Exception as e:
            logging.error(f"{evaluator.name} failed for '{item.title}': {e}", extra=extra)
            return None

    def _collect(self, item: ContentItem, context: RoutingContext, extra: dict) -> List[RoutingDecision]:
        run_list = self.run_list()
        if self.parallel and len(run_list) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(lambda e: self._run_one(e, item, context, extra), run_list))
        else:
            results = [self._run_one(e, item, context, extra) for e in run_list]

        decisions: List[RoutingDecision] = []
        for evaluator, found in zip(run_list, results):
            if found:
                logging.debug(f"{evaluator.name} produced {len(found)} decision(s)", extra=extra)
                decisions.extend(found)
        return decisions

    def _needs_enrichment(self, rules: Dict[int, RouterRule], context: RoutingContext) -> bool:
        plugin_families = {p.rule_type for p in self.plugins}
        return any(
            r.enabled and r.target_type == context.target_type
            and r.type in METADATA_FAMILIES and r.type not in plugin_families
            for r in rules.values()
        )

    # -------------------------
    # Merging
    # -------------------------
    def _valid_target(self, decision: RoutingDecision, context: RoutingContext, extra: dict) -> bool:
        instance = self.store.get_instance(decision.instance_id, context.target_type)
        if instance is None or not instance.enabled:
            logging.warning(
                f"Dropping decision from rule {decision.rule_id}: {context.target_type} instance "
                f"{decision.instance_id} is missing or disabled", extra=extra)
            return False
        return True

    @staticmethod
    def select_per_instance(decisions: Sequence[RoutingDecision]) -> List[RoutingDecision]:
        """
        Keep one decision per instance: highest priority, then lowest rule id.
        Output is ordered by the same key so the primary target is first.
        """
        def rank(d: RoutingDecision) -> Tuple[int, int]:
            return (-d.priority, d.rule_id if d.rule_id is not None else float('inf'))

        best: Dict[int, RoutingDecision] = {}
        for decision in decisions:
            current = best.get(decision.instance_id)
            if current is None or rank(decision) < rank(current):
                best[decision.instance_id] = decision
        return sorted(best.values(), key=lambda d: (rank(d), d.instance_id))

    def _fallback(self, context: RoutingContext, extra: dict) -> List[RouterDecision]:
        if context.syncing and context.sync_target_instance_id is not None:
            target = self.store.get_instance(context.sync_target_instance_id, context.target_type)
            if target is not None and target.enabled:
                logging.info(f"No rule matched; routing to sync target '{target.name}'", extra=extra)
                return [RouterDecision.route(target.default_decision())]
            logging.warning(f"Sync target instance {context.sync_target_instance_id} is unavailable", extra=extra)

        default = self.store.get_default_instance(context.target_type)
        if default is None:
            logging.warning(f"No rule matched and no default {context.target_type} instance is configured",
                            extra=extra)
            return []
        logging.info(f"No rule matched; using default {context.target_type} instance '{default.name}'", extra=extra)
        return [RouterDecision.route(default.default_decision())]

    def _wrap(self, decision: RoutingDecision, rule: Optional[RouterRule], context: RoutingContext) -> RouterDecision:
        if rule is None or not rule.always_require_approval or context.syncing:
            return RouterDecision.route(decision)
        trigger = 'content_criteria' if rule.approval_trigger == 'content_criteria' else 'router_rule'
        reason = rule.approval_reason or f"Rule '{rule.name}' requires approval"
        return RouterDecision.require_approval(
            reason=reason,
            triggered_by=trigger,
            proposed_routing=decision,
            data={'ruleId': rule.id, 'ruleName': rule.name},
        )

    # -------------------------
    # Entry point
    # -------------------------
    def resolve(self, item: ContentItem, context: RoutingContext,
                extra: Optional[dict] = None) -> List[RouterDecision]:
        """
        Evaluate ``item`` and return one RouterDecision per target instance,
        a single ``reject``, or an empty list when nothing can route it.

        Rule storage errors propagate; failures inside one family do not.
        """
        extra = extra or {}
        if context.content_type not in CONTENT_TYPES:
            logging.error(f"Unsupported content type '{context.content_type}'", extra=extra)
            return []

        rules = {r.id: r for r in self.store.get_router_rules()}
        active = [r for r in rules.values() if r.enabled and r.target_type == context.target_type]
        if not active:
            logging.debug(f"No enabled {context.target_type} rules; skipping evaluation", extra=extra)
            return self._fallback(context, extra)

        if self.lookup is not None and item.metadata is None and self._needs_enrichment(rules, context):
            item = self.lookup.enrich(item, context.content_type)

        matched: List[RoutingDecision] = []
        for decision in self._collect(item, context, extra):
            rule = rules.get(decision.rule_id)
            action = rule.action if rule else 'route'
            if action == 'reject':
                logging.info(f"Rule '{rule.name}' rejects '{item.title}'", extra=extra)
                return [RouterDecision.reject()]
            if action == 'continue':
                logging.info(f"Rule '{rule.name}' matched '{item.title}' and passes to the next rule", extra=extra)
                continue
            if decision.instance_type is None:
                decision.instance_type = context.target_type
            if self._valid_target(decision, context, extra):
                matched.append(decision)

        selected = self.select_per_instance(matched)
        if not selected:
            return self._fallback(context, extra)

        for decision in selected:
            logging.info(
                f"Routing '{item.title}' to {context.target_type} instance {decision.instance_id} "
                f"via rule '{decision.rule_name}' (priority {decision.priority})", extra=extra)
        return [self._wrap(d, rules.get(d.rule_id), context) for d in selected]
