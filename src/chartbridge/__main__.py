from chartbridge.cli import main

main()
