from fuel.cli import main

main()
