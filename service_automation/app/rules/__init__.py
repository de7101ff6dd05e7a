"""
Rules package.

Defines the automation rule model, the closed condition/action vocabulary
and the condition evaluator.

Modules of interest:
- models: Rule, Event, condition tree and ActionSpec variants plus the
  document decoders used to compile a rule once per version.
- conditions: Pure, total evaluation of a condition tree against a payload.
"""
