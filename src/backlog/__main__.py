from backlog.cli import main

main()
