from chatflow.cli import main

main()
