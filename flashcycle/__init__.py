from flashcycle.src.flash_arbitrage.config import ArbitrageConfig, load_config
from flashcycle.src.flash_arbitrage.graph import LiquidityGraph
from flashcycle.src.flash_arbitrage.pipeline import ArbitragePipeline
from flashcycle.src.flash_arbitrage.venues import VenueRegistry, default_registry
