"""
Ad Video Generation Pipeline

Orchestration for product and character ad videos:
  Single-stage — cover image → video (or cover only / custom script)
  Segmented    — per-segment keyframes → clips → one ordered merge
  Monitor      — periodic reconciler sweep that advances in-flight projects

Routers live in `.routes`; they are imported by `adworker.main`.
"""
