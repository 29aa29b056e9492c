"""MakakaTrade - simulated crypto trading with real-time price distribution"""

__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the application"""
    import uvicorn
    from .config import TradeConfig

    config = TradeConfig.from_env()
    uvicorn.run("makakatrade.app:app", host=config.host, port=config.port, log_level=config.log_level.lower())
