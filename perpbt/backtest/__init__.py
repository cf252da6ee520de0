"""
Backtest core.

Entry points:
  perpbt.backtest.engine.run_backtest
  perpbt.backtest.sweep.run_sweep / parameter_grid
"""
