"""POS Guardian analyzer - per-event rule evaluation and alerting pipeline.

Modules
───────
  checks    - one check class per rule kind (threshold, value, absence, temporal, anomaly)
  catalog   - RuleCatalog: active rules per store, YAML loader
  detector  - RuleEvaluator: Event -> list[RuleMatch], deferred absence checks
  lanes     - per-store worker lanes ordered by capture time
  pipeline  - persist -> evaluate -> record -> dispatch orchestration
  cli       - argparse entry-point
"""
