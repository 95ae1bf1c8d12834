"""Single-agent pipeline: plan -> execute -> fix -> qa, driven by completion signals."""
