"""Authorization layer: the closed set of roles and what each role may do.

Handlers never compare role strings themselves; they resolve a `Role` once and ask
`require_capability` for the operation they are about to run.
"""
