from flowbroker.app import main

main()
