from ruleflow.cli import main

main()
