from polymarket_insider_finder.cli import main

main()
