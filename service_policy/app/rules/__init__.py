"""
Policy rules package.

Defines the policy model, the store and the evaluation engine used by the
Policy Service. Evaluation is deny-overrides over priority-ordered policies
with a default-deny fallback, and every decision carries a reason and a risk
score for audit.

Modules of interest:
- models: Subjects, tenant contexts, resources, policies and decisions.
- conditions: Time window, amount, IP and attribute predicates.
- store: Thread-safe policy registry with conflict detection.
- engine: The decision algorithm.
- loader: YAML/JSON policy documents.
"""
