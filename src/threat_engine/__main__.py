from src.threat_engine.server import main

main()
